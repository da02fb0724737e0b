"""Webhook ingestion and action dispatch for Whatsappier automations."""

from .__version__ import __version__

__all__ = ["__version__"]
