"""Turn raw webhook payloads into typed trigger events."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .. import channels
from .errors import (
    EmptyPayload,
    MissingCorrelationKey,
    UnsupportedPayload,
)
from .models import Platform, SourceHint, TriggerEvent, TriggerKind, utcnow

logger = logging.getLogger(__name__)


def _resolve(
    hint: SourceHint, payload: Mapping[str, Any]
) -> tuple[TriggerKind, channels.PayloadAdapter]:
    if hint.kind is not None:
        return hint.kind, channels.adapter_for_kind(hint.kind)

    if hint.topic:
        candidates = channels.iter_adapters()
        if hint.platform is not None:
            try:
                candidates = [channels.get_adapter(hint.platform)]
            except KeyError:
                pass
        for adapter in candidates:
            kind = adapter.kind_for_topic(hint.topic)
            if kind is not None:
                return kind, adapter

    for adapter in channels.iter_adapters():
        kind = adapter.detect_kind(payload)
        if kind is not None:
            return kind, adapter

    raise UnsupportedPayload("Payload shape does not match any known event kind")


def normalize(hint: SourceHint, raw_payload: Any) -> TriggerEvent:
    """Validate ``raw_payload`` and map it to a :class:`TriggerEvent`.

    The event kind comes from, in order: the explicit kind on ``hint``, the
    platform topic on ``hint``, then the payload shape. The source platform
    is the hinted platform when there is one, else the platform of the
    adapter that understood the payload.
    """

    if not isinstance(raw_payload, Mapping) or not raw_payload:
        raise EmptyPayload("Payload is empty or not a JSON object")

    kind, adapter = _resolve(hint, raw_payload)
    correlation_key, fields = adapter.extract(kind, raw_payload)
    if not correlation_key:
        raise MissingCorrelationKey(
            f"Payload for {kind.value} carries no correlation identifier"
        )

    platform: Platform = hint.platform or adapter.platform
    if hint.instance_name and "instance_name" not in fields:
        fields["instance_name"] = hint.instance_name

    event = TriggerEvent(
        kind=kind,
        source_platform=platform,
        correlation_key=correlation_key,
        fields=fields,
        raw_payload=dict(raw_payload),
        received_at=utcnow(),
    )
    logger.debug(
        "Normalized %s event from %s (key=%s, fields=%s)",
        kind.value,
        platform.value,
        correlation_key,
        sorted(fields),
    )
    return event


__all__ = ["normalize"]
