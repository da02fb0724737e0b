"""Payload adapter registry, one adapter per source platform."""

from __future__ import annotations

from ..automations.models import Platform, TriggerKind
from .base import PayloadAdapter, normalize_phone
from .lightfunnels import LightfunnelsAdapter
from .whatsapp import WhatsAppAdapter

_REGISTRY: dict[Platform, PayloadAdapter] = {}


def register_adapter(adapter: PayloadAdapter) -> None:
    """Register a payload adapter instance in the global registry."""
    _REGISTRY[adapter.platform] = adapter


def get_adapter(platform: Platform | str) -> PayloadAdapter:
    """Retrieve the adapter for ``platform`` or raise ``KeyError``."""
    try:
        key = platform if isinstance(platform, Platform) else Platform.parse(platform)
    except ValueError as exc:
        raise KeyError(f"Platform '{platform}' is not supported") from exc
    if key not in _REGISTRY:
        raise KeyError(f"Platform '{platform}' has no payload adapter")
    return _REGISTRY[key]


def adapter_for_kind(kind: TriggerKind) -> PayloadAdapter:
    for adapter in _REGISTRY.values():
        if kind in adapter.kinds:
            return adapter
    raise KeyError(f"No payload adapter handles '{kind.value}'")


def iter_adapters() -> list[PayloadAdapter]:
    return list(_REGISTRY.values())


# Pre-register built-in adapters; the order is the shape-detection order.
register_adapter(WhatsAppAdapter())
register_adapter(LightfunnelsAdapter())

__all__ = [
    "PayloadAdapter",
    "adapter_for_kind",
    "get_adapter",
    "iter_adapters",
    "normalize_phone",
    "register_adapter",
]
