"""Outbound clients for the platforms automations act on."""

from .base import ApiClient
from .google_sheets import GoogleSheetsClient
from .lightfunnels import LightfunnelsClient
from .whatsapp import EvolutionClient

__all__ = [
    "ApiClient",
    "EvolutionClient",
    "GoogleSheetsClient",
    "LightfunnelsClient",
]
