"""Domain models shared by the trigger ingestion and dispatch engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Platform(str, Enum):
    LIGHTFUNNELS = "LIGHTFUNNELS"
    GOOGLE_SHEETS = "GOOGLE_SHEETS"
    WHATSAPP = "WHATSAPP"
    SHOPIFY = "SHOPIFY"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        """Resolve ``value`` case-insensitively, accepting ``google-sheets``."""

        normalized = value.strip().upper().replace("-", "_")
        return cls(normalized)


class TriggerKind(str, Enum):
    ORDER_CONFIRMED = "lightfunnels_order_confirmed"
    ORDER_FULFILLED = "lightfunnels_order_fulfilled"
    CHECKOUT_CREATED = "lightfunnels_checkout_created"
    CHECKOUT_OTP_REQUESTED = "lightfunnels_checkout_otp"
    GENERIC_REPLY = "generic_reply"


class ActionKind(str, Enum):
    SEND_WHATSAPP_MESSAGE = "send_whatsapp_message"
    SEND_WHATSAPP_OTP = "send_whatsapp_otp"
    ADD_GOOGLE_SHEET_ROW = "add_google_sheet_row"


class DeviceStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"


class DispatchStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class PendingReplyState(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"


class ReplyStatus(str, Enum):
    RESOLVED = "resolved"
    REJECTED = "rejected"
    NO_MATCHING_PENDING_REPLY = "no_matching_pending_reply"


# ----------------------------------------------------------------------
# Records owned by the persistence collaborators


class Connection(BaseModel):
    id: str
    user_id: str
    platform: Platform
    is_active: bool = True
    credentials: dict[str, Any] = Field(default_factory=dict)


class Device(BaseModel):
    id: str
    user_id: str
    name: str
    status: DeviceStatus = DeviceStatus.DISCONNECTED
    api_url: str | None = None
    api_key: str | None = None


class MessageTemplate(BaseModel):
    id: str
    user_id: str
    name: str
    content: str
    variables: list[str] = Field(default_factory=list)


class Automation(BaseModel):
    id: str
    user_id: str
    template_definition_id: str
    trigger_kind: TriggerKind
    connection_id: str | None = None
    device_id: str | None = None
    template_id: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


# ----------------------------------------------------------------------
# Engine-owned records


@dataclass(frozen=True)
class SourceHint:
    """What the ingestion boundary knows about the origin of a payload."""

    platform: Platform | None = None
    kind: TriggerKind | None = None
    topic: str | None = None
    instance_name: str | None = None


@dataclass
class TriggerEvent:
    """Normalized representation of one inbound webhook call."""

    kind: TriggerKind
    source_platform: Platform
    correlation_key: str
    fields: dict[str, Any] = field(default_factory=dict)
    raw_payload: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=utcnow)

    @property
    def partition_key(self) -> str:
        return f"{self.source_platform.value}:{self.correlation_key}"

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form used to park the event in a delayed job store."""

        return {
            "kind": self.kind.value,
            "source_platform": self.source_platform.value,
            "correlation_key": self.correlation_key,
            "fields": self.fields,
            "raw_payload": self.raw_payload,
            "received_at": self.received_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TriggerEvent":
        return cls(
            kind=TriggerKind(data["kind"]),
            source_platform=Platform(data["source_platform"]),
            correlation_key=data["correlation_key"],
            fields=dict(data.get("fields") or {}),
            raw_payload=dict(data.get("raw_payload") or {}),
            received_at=datetime.fromisoformat(data["received_at"]),
        )


@dataclass
class ResolvedAutomation:
    automation: Automation
    definition: Any
    config: BaseModel
    connection: Connection | None = None


@dataclass
class PendingReply:
    token: str
    automation_id: str
    destination: str
    reply_handler: str
    created_at: datetime
    expires_at: datetime
    context: dict[str, Any] = field(default_factory=dict)
    state: PendingReplyState = PendingReplyState.PENDING
    finished_at: datetime | None = None

    def is_overdue(self, now: datetime) -> bool:
        return self.state is PendingReplyState.PENDING and now >= self.expires_at


@dataclass
class DispatchOutcome:
    status: DispatchStatus
    automation_id: str | None
    event_kind: TriggerKind
    correlation_key: str
    action_kind: ActionKind | None = None
    external_id: str | None = None
    retryable: bool = False
    error: str | None = None
    attempts: int = 0
    details: dict[str, Any] = field(default_factory=dict)
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status is DispatchStatus.SUCCEEDED


@dataclass
class ReplyOutcome:
    status: ReplyStatus
    token: str
    automation_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
