"""Evolution API (WhatsApp) webhook payloads."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..automations.errors import IgnoredPayload
from ..automations.models import Platform, TriggerKind
from .base import PayloadAdapter, as_mapping, as_text, dig, normalize_phone

UPSERT_EVENTS = {"messages.upsert", "messages_upsert"}


class WhatsAppAdapter(PayloadAdapter):
    platform = Platform.WHATSAPP
    kinds = frozenset({TriggerKind.GENERIC_REPLY})

    def kind_for_topic(self, topic: str) -> TriggerKind | None:
        if topic.strip().lower() in UPSERT_EVENTS:
            return TriggerKind.GENERIC_REPLY
        return None

    def detect_kind(self, payload: Mapping[str, Any]) -> TriggerKind | None:
        event = as_text(payload.get("event"))
        if event and event.lower() in UPSERT_EVENTS:
            return TriggerKind.GENERIC_REPLY
        return None

    def extract(
        self, kind: TriggerKind, payload: Mapping[str, Any]
    ) -> tuple[str | None, dict[str, Any]]:
        data = as_mapping(payload.get("data"))
        key = as_mapping(data.get("key"))
        if key.get("fromMe") is True:
            raise IgnoredPayload("Message sent by the device itself")
        remote_jid = as_text(key.get("remoteJid")) or ""
        if remote_jid.endswith("@g.us"):
            raise IgnoredPayload("Group messages are not correlated")
        text = as_text(dig(data, "message", "conversation")) or as_text(
            dig(data, "message", "extendedTextMessage", "text")
        )
        if text is None:
            raise IgnoredPayload("Message has no text content")
        phone = normalize_phone(remote_jid)
        fields = {
            "phone": phone,
            "reply_text": text,
            "reply_message_id": as_text(key.get("id")),
            "instance_name": as_text(payload.get("instance")),
            "push_name": as_text(data.get("pushName")),
        }
        return phone, {k: v for k, v in fields.items() if v is not None}
