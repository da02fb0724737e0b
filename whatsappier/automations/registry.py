"""Static catalog of automation template definitions.

Each definition pairs a trigger (what event starts the automation) with an
action (what side effect it performs) and a pydantic schema describing the
configuration a user fills in. The catalog is built once at import time and
never mutated afterwards; lookups are plain dictionary reads.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import ActionKind, Platform, TriggerKind


class TemplateConfig(BaseModel):
    """Base for template configuration schemas.

    Stored configs were written by the dashboard in camelCase, so both the
    alias and the field name are accepted.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class OrderToWhatsappConfig(TemplateConfig):
    lightfunnels_connection_id: str = Field(min_length=1)
    funnel_id: str | None = None
    whatsapp_device_id: str = Field(min_length=1)
    message_template_id: str = Field(min_length=1)
    require_confirmation: bool = True
    confirmation_window_hours: int = Field(default=48, ge=1, le=168)


class AbandonedCheckoutRecoveryConfig(TemplateConfig):
    lightfunnels_connection_id: str = Field(min_length=1)
    whatsapp_device_id: str = Field(min_length=1)
    message_template_id: str = Field(min_length=1)
    delay_minutes: int = Field(default=20, ge=5, le=1440)


class OtpVerificationConfig(TemplateConfig):
    whatsapp_device_id: str = Field(min_length=1)
    message_template: str = Field(
        default="Your verification code is: {{otp}}. This code expires in 10 minutes.",
        min_length=1,
    )
    otp_length: int = Field(default=6, ge=4, le=8)
    otp_expiry_minutes: int = Field(default=10, ge=1, le=60)


@dataclass(frozen=True)
class SheetColumnDefinition:
    field: str
    display_name: str
    category: str
    default_enabled: bool


ORDER_SHEET_COLUMNS: tuple[SheetColumnDefinition, ...] = (
    SheetColumnDefinition("date", "Date", "Basic Info", True),
    SheetColumnDefinition("order_number", "Order Number", "Basic Info", True),
    SheetColumnDefinition("order_id", "Order ID", "Basic Info", False),
    SheetColumnDefinition("created_at", "Created At", "Basic Info", False),
    SheetColumnDefinition("customer_name", "Customer Name", "Customer Info", True),
    SheetColumnDefinition("customer_email", "Customer Email", "Customer Info", True),
    SheetColumnDefinition("customer_phone", "Customer Phone", "Customer Info", True),
    SheetColumnDefinition("currency", "Currency", "Financial", False),
    SheetColumnDefinition("subtotal", "Subtotal", "Financial", False),
    SheetColumnDefinition("total_amount", "Total Amount", "Financial", True),
    SheetColumnDefinition("shipping_country", "Shipping Country", "Shipping", False),
    SheetColumnDefinition("shipping_city", "Shipping City", "Shipping", False),
    SheetColumnDefinition("billing_country", "Billing Country", "Billing", False),
    SheetColumnDefinition("funnel_id", "Funnel ID", "Source", False),
    SheetColumnDefinition("store_id", "Store ID", "Source", False),
    SheetColumnDefinition("financial_status", "Financial Status", "Payment", False),
    SheetColumnDefinition("fulfillment_status", "Fulfillment Status", "Status", False),
    SheetColumnDefinition("item_count", "Item Count", "Items", True),
)


class SheetColumn(TemplateConfig):
    field: str
    enabled: bool = True
    category: str | None = None


def default_sheet_columns() -> list[SheetColumn]:
    return [
        SheetColumn(field=c.field, enabled=c.default_enabled, category=c.category)
        for c in ORDER_SHEET_COLUMNS
    ]


class GsheetsOrderSyncConfig(TemplateConfig):
    lightfunnels_connection_id: str = Field(min_length=1)
    google_sheets_connection_id: str = Field(min_length=1)
    sync_source: Literal["all_sources", "specific_funnel", "specific_store"] = (
        "all_sources"
    )
    funnel_id: str | None = None
    store_id: str | None = None
    google_sheet_id: str = Field(min_length=1)
    worksheet_name: str = Field(default="Sheet1", min_length=1)
    sheet_columns: list[SheetColumn] = Field(default_factory=default_sheet_columns)


@dataclass(frozen=True)
class TriggerSpec:
    kind: TriggerKind
    platform: Platform | None = None


@dataclass(frozen=True)
class ActionSpec:
    kind: ActionKind
    platform: Platform | None = None


@dataclass(frozen=True)
class ResourceRequirements:
    connections: tuple[Platform, ...] = ()
    device: bool = False
    template: bool = False


#: Config key naming the connection an action needs for each platform.
CONNECTION_CONFIG_KEYS: Mapping[Platform, str] = MappingProxyType(
    {
        Platform.LIGHTFUNNELS: "lightfunnels_connection_id",
        Platform.GOOGLE_SHEETS: "google_sheets_connection_id",
    }
)


def _frozen(data: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
    return MappingProxyType(dict(data or {}))


@dataclass(frozen=True)
class AutomationTemplateDefinition:
    id: str
    name: str
    description: str
    category: str
    trigger: TriggerSpec
    action: ActionSpec
    config_schema: type[TemplateConfig]
    requirements: ResourceRequirements = ResourceRequirements()
    default_config: Mapping[str, Any] = field(default_factory=_frozen)
    awaits_reply: bool = False
    reply_handler: str | None = None
    #: Values used when an event lacks a variable the message refers to.
    render_fallbacks: Mapping[str, str] = field(default_factory=_frozen)
    #: Config key holding a delay (minutes) applied before dispatching.
    delay_config_key: str | None = None
    #: Whether repeated events inside the dedup window are dropped.
    deduplicate: bool = True

    def validate_config(self, raw: Mapping[str, Any]) -> TemplateConfig:
        """Validate ``raw`` merged over the definition defaults.

        Raises :class:`pydantic.ValidationError` when the stored config does
        not satisfy the schema.
        """

        merged = dict(raw)
        for key, value in self.default_config.items():
            if key not in merged and to_camel(key) not in merged:
                merged[key] = value
        return self.config_schema.model_validate(merged)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "trigger": {
                "kind": self.trigger.kind.value,
                "platform": self.trigger.platform.value if self.trigger.platform else None,
            },
            "action": {
                "kind": self.action.kind.value,
                "platform": self.action.platform.value if self.action.platform else None,
            },
            "awaits_reply": self.awaits_reply,
            "requirements": {
                "connections": [p.value for p in self.requirements.connections],
                "device": self.requirements.device,
                "template": self.requirements.template,
            },
            "default_config": dict(self.default_config),
        }


LF_ORDER_TO_WHATSAPP = AutomationTemplateDefinition(
    id="lf-order-to-whatsapp",
    name="Send WhatsApp on Lightfunnels Order",
    description=(
        "Send a WhatsApp message when a new order is confirmed in a "
        "Lightfunnels funnel and tag the order from the customer's reply."
    ),
    category="E-commerce",
    trigger=TriggerSpec(TriggerKind.ORDER_CONFIRMED, Platform.LIGHTFUNNELS),
    action=ActionSpec(ActionKind.SEND_WHATSAPP_MESSAGE, Platform.WHATSAPP),
    config_schema=OrderToWhatsappConfig,
    requirements=ResourceRequirements(
        connections=(Platform.LIGHTFUNNELS,), device=True, template=True
    ),
    default_config=_frozen({"require_confirmation": True, "confirmation_window_hours": 48}),
    awaits_reply=True,
    reply_handler="order_confirmation",
    render_fallbacks=_frozen({"customer_name": "Customer"}),
)

LF_ABANDONED_CHECKOUT_RECOVERY = AutomationTemplateDefinition(
    id="lf-abandoned-checkout-recovery",
    name="Lightfunnels Abandoned Checkout Recovery",
    description=(
        "Send a WhatsApp message with a recovery link after a checkout is "
        "abandoned for a set time."
    ),
    category="E-commerce",
    trigger=TriggerSpec(TriggerKind.CHECKOUT_CREATED, Platform.LIGHTFUNNELS),
    action=ActionSpec(ActionKind.SEND_WHATSAPP_MESSAGE, Platform.WHATSAPP),
    config_schema=AbandonedCheckoutRecoveryConfig,
    requirements=ResourceRequirements(
        connections=(Platform.LIGHTFUNNELS,), device=True, template=True
    ),
    default_config=_frozen({"delay_minutes": 20}),
    render_fallbacks=_frozen({"customer_name": "there"}),
    delay_config_key="delay_minutes",
)

LF_OTP_VERIFICATION = AutomationTemplateDefinition(
    id="lf-otp-verification",
    name="Lightfunnels Checkout OTP",
    description="Verify customer phone numbers via WhatsApp OTP during Lightfunnels checkout.",
    category="Verification",
    trigger=TriggerSpec(TriggerKind.CHECKOUT_OTP_REQUESTED, Platform.LIGHTFUNNELS),
    action=ActionSpec(ActionKind.SEND_WHATSAPP_OTP, Platform.WHATSAPP),
    config_schema=OtpVerificationConfig,
    requirements=ResourceRequirements(device=True),
    default_config=_frozen(
        {
            "message_template": "Your verification code is: {{otp}}. This code expires in 10 minutes.",
            "otp_length": 6,
            "otp_expiry_minutes": 10,
        }
    ),
    awaits_reply=True,
    reply_handler="otp_code",
    # A customer asking for a new code must get one.
    deduplicate=False,
)

GSHEETS_ORDER_SYNC = AutomationTemplateDefinition(
    id="gsheets-order-sync",
    name="Google Sheets Order Sync",
    description=(
        "Append confirmed Lightfunnels orders to a Google Sheets spreadsheet "
        "with customizable columns."
    ),
    category="Data Sync",
    trigger=TriggerSpec(TriggerKind.ORDER_CONFIRMED, Platform.LIGHTFUNNELS),
    action=ActionSpec(ActionKind.ADD_GOOGLE_SHEET_ROW, Platform.GOOGLE_SHEETS),
    config_schema=GsheetsOrderSyncConfig,
    requirements=ResourceRequirements(
        connections=(Platform.LIGHTFUNNELS, Platform.GOOGLE_SHEETS)
    ),
    default_config=_frozen({"sync_source": "all_sources", "worksheet_name": "Sheet1"}),
)


_REGISTRY: dict[str, AutomationTemplateDefinition] = {}


def register_template(definition: AutomationTemplateDefinition) -> None:
    """Add ``definition`` to the catalog; identifiers must be unique."""

    if definition.id in _REGISTRY:
        raise ValueError(f"Template definition '{definition.id}' already registered")
    _REGISTRY[definition.id] = definition


def get_template_definition(template_id: str) -> AutomationTemplateDefinition:
    """Return the definition for ``template_id`` or raise ``KeyError``."""

    if template_id not in _REGISTRY:
        raise KeyError(f"Template definition '{template_id}' is not registered")
    return _REGISTRY[template_id]


def list_template_definitions() -> list[AutomationTemplateDefinition]:
    return list(_REGISTRY.values())


for _definition in (
    LF_ORDER_TO_WHATSAPP,
    LF_ABANDONED_CHECKOUT_RECOVERY,
    LF_OTP_VERIFICATION,
    GSHEETS_ORDER_SYNC,
):
    register_template(_definition)


__all__ = [
    "AutomationTemplateDefinition",
    "ActionSpec",
    "CONNECTION_CONFIG_KEYS",
    "ORDER_SHEET_COLUMNS",
    "ResourceRequirements",
    "TemplateConfig",
    "TriggerSpec",
    "get_template_definition",
    "list_template_definitions",
    "register_template",
]
