"""Execute the action of a resolved automation.

Every action performs exactly one external call. Preparation (resource
lookup, filters, rendering) happens once; only the external call itself is
retried, and only for transient failures.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..integrations.google_sheets import updated_range
from ..integrations.whatsapp import message_id
from .correlator import ReplyCorrelator, order_confirmation_token, otp_token
from .errors import (
    AutomationEngineError,
    DispatchError,
    ResourceResolutionError,
    StoreUnavailable,
    UnsupportedAction,
)
from .models import (
    ActionKind,
    Connection,
    Device,
    DeviceStatus,
    DispatchOutcome,
    DispatchStatus,
    MessageTemplate,
    Platform,
    ResolvedAutomation,
    TriggerEvent,
)
from .registry import CONNECTION_CONFIG_KEYS, SheetColumn
from .rendering import render_template
from .reply_handlers import CONFIRM, ORDER_TAGS
from .repository import ConnectionStore, DeviceStore, TemplateStore

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before the retry that follows failed ``attempt`` (1-based)."""

        return min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)


@dataclass
class ActionResult:
    external_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PreparedAction:
    """A ready-to-run side effect plus what to do once it succeeded."""

    send: Callable[[], ActionResult]
    after_success: Callable[[ActionResult], None] = lambda result: None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Skip:
    reason: str


Preparer = Callable[
    [ResolvedAutomation, TriggerEvent, Dict[Platform, Connection]], "PreparedAction | Skip"
]


def generate_otp(length: int) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


class ActionDispatcher:
    def __init__(
        self,
        *,
        devices: DeviceStore,
        templates: TemplateStore,
        connections: ConnectionStore,
        correlator: ReplyCorrelator,
        is_live: Callable[[str], bool],
        evolution_factory: Callable[[Device], Any],
        sheets_factory: Callable[[Connection], Any],
        lightfunnels_factory: Callable[[Connection], Any],
        retry_policy: RetryPolicy | None = None,
        otp_generator: Callable[[int], str] = generate_otp,
    ) -> None:
        self.devices = devices
        self.templates = templates
        self.connections = connections
        self.correlator = correlator
        self.is_live = is_live
        self.evolution_factory = evolution_factory
        self.sheets_factory = sheets_factory
        self.lightfunnels_factory = lightfunnels_factory
        self.retry_policy = retry_policy or RetryPolicy()
        self.otp_generator = otp_generator
        self._preparers: Dict[ActionKind, Preparer] = {
            ActionKind.SEND_WHATSAPP_MESSAGE: self._prepare_whatsapp_message,
            ActionKind.SEND_WHATSAPP_OTP: self._prepare_whatsapp_otp,
            ActionKind.ADD_GOOGLE_SHEET_ROW: self._prepare_sheet_row,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def dispatch(
        self,
        resolved: ResolvedAutomation,
        event: TriggerEvent,
        cancel_event: threading.Event | None = None,
    ) -> DispatchOutcome:
        automation_id = resolved.automation.id
        action_kind = resolved.definition.action.kind
        outcome = DispatchOutcome(
            status=DispatchStatus.FAILED,
            automation_id=automation_id,
            event_kind=event.kind,
            correlation_key=event.correlation_key,
            action_kind=action_kind,
        )

        try:
            prepared = self._prepare(resolved, event)
        except AutomationEngineError as exc:
            outcome.error = f"{exc.__class__.__name__}: {exc}"
            outcome.retryable = getattr(exc, "retryable", False)
            return outcome
        except Exception as exc:
            logger.exception(
                "Preparing %s for automation %s failed", action_kind.value, automation_id
            )
            outcome.error = f"{exc.__class__.__name__}: {exc}"
            outcome.details = {"category": "internal"}
            return outcome

        if isinstance(prepared, Skip):
            outcome.status = DispatchStatus.SKIPPED
            outcome.details = {"reason": prepared.reason}
            return outcome

        outcome.details = dict(prepared.details)
        cancel_event = cancel_event or threading.Event()
        policy = self.retry_policy
        while True:
            outcome.attempts += 1
            try:
                result = prepared.send()
                break
            except DispatchError as exc:
                outcome.error = f"{exc.__class__.__name__}: {exc}"
                outcome.retryable = exc.retryable
                if not exc.retryable or outcome.attempts >= policy.max_attempts:
                    return outcome
                delay = policy.delay_for(outcome.attempts)
                logger.info(
                    "Attempt %s for automation %s failed (%s); retrying in %.1fs",
                    outcome.attempts,
                    automation_id,
                    exc,
                    delay,
                )
            except Exception as exc:
                return self._crashed(outcome, exc)
            try:
                cancelled = cancel_event.wait(delay) or not self._still_live(automation_id)
            except Exception as exc:
                return self._crashed(outcome, exc)
            if cancelled:
                outcome.error = CANCELLED
                outcome.retryable = False
                return outcome

        outcome.status = DispatchStatus.SUCCEEDED
        outcome.error = None
        outcome.retryable = False
        outcome.external_id = result.external_id
        try:
            prepared.after_success(result)
        except Exception as exc:
            # the side effect already happened; keep the success
            logger.exception("Follow-up for automation %s failed", automation_id)
            outcome.details["follow_up_error"] = f"{exc.__class__.__name__}: {exc}"
        outcome.details.update(result.details)
        return outcome

    def _crashed(self, outcome: DispatchOutcome, exc: Exception) -> DispatchOutcome:
        logger.exception(
            "Action %s for automation %s crashed",
            outcome.action_kind.value if outcome.action_kind else None,
            outcome.automation_id,
        )
        outcome.error = f"{exc.__class__.__name__}: {exc}"
        outcome.retryable = False
        outcome.details["category"] = "internal"
        return outcome

    def _still_live(self, automation_id: str) -> bool:
        try:
            return self.is_live(automation_id)
        except StoreUnavailable as exc:
            logger.warning(
                "Could not re-check automation %s before retrying: %s", automation_id, exc
            )
            return True

    # ------------------------------------------------------------------
    # Resource resolution
    # ------------------------------------------------------------------

    def _prepare(
        self, resolved: ResolvedAutomation, event: TriggerEvent
    ) -> PreparedAction | Skip:
        action_kind = resolved.definition.action.kind
        preparer = self._preparers.get(action_kind)
        if preparer is None:
            raise UnsupportedAction(f"No handler for action {action_kind.value}")
        connections = self._required_connections(resolved)
        return preparer(resolved, event, connections)

    def _required_connections(self, resolved: ResolvedAutomation) -> Dict[Platform, Connection]:
        """Resolve every connection the template definition requires.

        A connection referenced by the automation row must still exist even
        when the definition does not list its platform.
        """

        automation = resolved.automation
        if automation.connection_id and resolved.connection is None:
            raise ResourceResolutionError(f"Connection {automation.connection_id} not found")
        connections: Dict[Platform, Connection] = {}
        for platform in resolved.definition.requirements.connections:
            key = CONNECTION_CONFIG_KEYS.get(platform)
            connection_id = getattr(resolved.config, key, None) if key else None
            if not connection_id and resolved.connection is not None:
                if resolved.connection.platform is platform:
                    connection_id = resolved.connection.id
            if not connection_id:
                raise ResourceResolutionError(f"No {platform.value} connection configured")
            connections[platform] = self._connection(resolved, connection_id, platform)
        return connections

    def _device(self, resolved: ResolvedAutomation, device_id: str) -> Device:
        device = self.devices.get_device(device_id)
        if device is None or device.user_id != resolved.automation.user_id:
            raise ResourceResolutionError(f"WhatsApp device {device_id} not found")
        if device.status is not DeviceStatus.CONNECTED:
            raise ResourceResolutionError(
                f"WhatsApp device {device_id} is not connected (status: {device.status.value})"
            )
        return device

    def _template(self, resolved: ResolvedAutomation, template_id: str) -> MessageTemplate:
        template = self.templates.get_template(template_id)
        if template is None or template.user_id != resolved.automation.user_id:
            raise ResourceResolutionError(f"Message template {template_id} not found")
        return template

    def _connection(
        self, resolved: ResolvedAutomation, connection_id: str, platform: Platform
    ) -> Connection:
        connection = self.connections.get_connection(connection_id)
        if (
            connection is None
            or connection.user_id != resolved.automation.user_id
            or connection.platform is not platform
        ):
            raise ResourceResolutionError(
                f"{platform.value} connection {connection_id} not found"
            )
        if not connection.is_active:
            raise ResourceResolutionError(
                f"{platform.value} connection {connection_id} is inactive"
            )
        return connection

    def _evolution_send(self, device: Device, phone: str, text: str) -> Callable[[], ActionResult]:
        client = self.evolution_factory(device)

        def send() -> ActionResult:
            response = client.send_text(device.name, phone, text)
            return ActionResult(external_id=message_id(response))

        return send

    # ------------------------------------------------------------------
    # Action preparers
    # ------------------------------------------------------------------

    def _prepare_whatsapp_message(
        self,
        resolved: ResolvedAutomation,
        event: TriggerEvent,
        connections: Dict[Platform, Connection],
    ) -> PreparedAction | Skip:
        config = resolved.config
        definition = resolved.definition
        funnel_id = getattr(config, "funnel_id", None)
        if funnel_id and event.fields.get("funnel_id") != funnel_id:
            return Skip(
                f"funnel {event.fields.get('funnel_id')} does not match configured funnel {funnel_id}"
            )
        phone = event.fields.get("customer_phone")
        if not phone:
            return Skip("event has no usable customer phone")

        device = self._device(resolved, config.whatsapp_device_id)
        template = self._template(resolved, config.message_template_id)
        text = render_template(
            template.content,
            event.fields,
            raw_payload=event.raw_payload,
            fallbacks=definition.render_fallbacks,
        )
        lf_connection = connections.get(Platform.LIGHTFUNNELS)
        order_id = event.fields.get("order_id")

        def after_success(result: ActionResult) -> None:
            if not definition.awaits_reply:
                return
            if not getattr(config, "require_confirmation", False):
                auto_confirm(result)
                return
            self.correlator.open(
                order_confirmation_token(device.id, phone),
                automation_id=resolved.automation.id,
                destination=phone,
                reply_handler=definition.reply_handler,
                ttl=timedelta(hours=config.confirmation_window_hours),
                context={
                    "order_id": order_id,
                    "connection_id": lf_connection.id if lf_connection else None,
                    "device_id": device.id,
                    "message_id": result.external_id,
                    "message_text": text,
                },
            )

        def auto_confirm(result: ActionResult) -> None:
            if lf_connection is None or not order_id:
                result.details["auto_confirm_error"] = "no order to tag"
                return
            try:
                client = self.lightfunnels_factory(lf_connection)
                client.update_order_tags(order_id, ORDER_TAGS[CONFIRM])
            except DispatchError as exc:
                logger.warning("Auto-confirming order %s failed: %s", order_id, exc)
                result.details["auto_confirm_error"] = f"{exc.__class__.__name__}: {exc}"
                return
            result.details["auto_confirmed"] = True

        return PreparedAction(
            send=self._evolution_send(device, phone, text),
            after_success=after_success,
            details={"template_id": template.id, "destination": phone},
        )

    def _prepare_whatsapp_otp(
        self,
        resolved: ResolvedAutomation,
        event: TriggerEvent,
        connections: Dict[Platform, Connection],
    ) -> PreparedAction | Skip:
        config = resolved.config
        definition = resolved.definition
        phone = event.fields.get("phone")
        if not phone:
            return Skip("event has no usable phone")

        device = self._device(resolved, config.whatsapp_device_id)
        code = self.otp_generator(config.otp_length)
        text = render_template(
            config.message_template,
            {**event.fields, "otp": code, "code": code},
            raw_payload=event.raw_payload,
            fallbacks=definition.render_fallbacks,
        )

        def after_success(result: ActionResult) -> None:
            self.correlator.open(
                otp_token(resolved.automation.id, phone),
                automation_id=resolved.automation.id,
                destination=phone,
                reply_handler=definition.reply_handler,
                ttl=timedelta(minutes=config.otp_expiry_minutes),
                context={"code": code, "email": event.fields.get("email")},
            )

        return PreparedAction(
            send=self._evolution_send(device, phone, text),
            after_success=after_success,
            details={"destination": phone},
        )

    def _prepare_sheet_row(
        self,
        resolved: ResolvedAutomation,
        event: TriggerEvent,
        connections: Dict[Platform, Connection],
    ) -> PreparedAction | Skip:
        config = resolved.config
        if config.sync_source == "specific_funnel" and config.funnel_id:
            if event.fields.get("funnel_id") != config.funnel_id:
                return Skip(f"funnel {event.fields.get('funnel_id')} is not synced")
        if config.sync_source == "specific_store" and config.store_id:
            if event.fields.get("store_id") != config.store_id:
                return Skip(f"store {event.fields.get('store_id')} is not synced")

        client = self.sheets_factory(connections[Platform.GOOGLE_SHEETS])
        row = build_sheet_row(config.sheet_columns, event.fields, event.received_at)
        if not row:
            return Skip("no sheet columns are enabled")

        def send() -> ActionResult:
            response = client.append_row(config.google_sheet_id, config.worksheet_name, row)
            return ActionResult(external_id=updated_range(response), details={"columns": len(row)})

        return PreparedAction(send=send, details={"spreadsheet_id": config.google_sheet_id})


def build_sheet_row(
    columns: List[SheetColumn], fields: Dict[str, Any], received_at: datetime
) -> List[str]:
    row: List[str] = []
    for column in columns:
        if not column.enabled:
            continue
        if column.field == "date":
            row.append(received_at.isoformat())
            continue
        value = fields.get(column.field)
        row.append("" if value is None else str(value))
    return row


__all__ = [
    "ActionDispatcher",
    "ActionResult",
    "RetryPolicy",
    "build_sheet_row",
    "generate_otp",
]
