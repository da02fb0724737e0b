"""Resolve which automation an event belongs to."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from .dedup import DedupWindow, dedup_key
from .errors import (
    AmbiguousMatch,
    AutomationInactive,
    AutomationNotFound,
    DuplicateDispatch,
    InvalidAutomationConfig,
    NoMatchingAutomation,
    PlatformMismatch,
    TriggerKindMismatch,
    UnknownTemplateDefinition,
)
from .models import Automation, Platform, ResolvedAutomation, TriggerEvent
from .registry import get_template_definition
from .repository import AutomationStore, ConnectionStore


# Config keys that default to the resource ids stored on the automation row.
_RECORD_FALLBACKS = {
    "lightfunnels_connection_id": "connection_id",
    "whatsapp_device_id": "device_id",
    "message_template_id": "template_id",
}


class RuleMatcher:
    def __init__(
        self,
        automations: AutomationStore,
        connections: ConnectionStore,
        dedup: DedupWindow,
    ) -> None:
        self._automations = automations
        self._connections = connections
        self._dedup = dedup

    def match(self, automation_id: str, event: TriggerEvent) -> ResolvedAutomation:
        """Resolve the automation addressed by id.

        Raises a :class:`MatchError` subclass naming the first check that
        failed.
        """

        automation = self._automations.get_automation(automation_id)
        if automation is None:
            raise AutomationNotFound(f"Automation {automation_id} does not exist")
        return self._resolve(automation, event)

    def match_platform(
        self, user_id: str, platform: Platform, event: TriggerEvent
    ) -> ResolvedAutomation:
        """Resolve the single active automation of ``user_id`` for ``event``.

        Zero candidates raise :class:`NoMatchingAutomation`; more than one
        raise :class:`AmbiguousMatch` and none of them runs.
        """

        candidates = [
            automation
            for automation in self._automations.list_active_automations(user_id, platform)
            if automation.trigger_kind is event.kind
        ]
        if not candidates:
            raise NoMatchingAutomation(
                f"No active {event.kind.value} automation for user {user_id} on {platform.value}"
            )
        if len(candidates) > 1:
            ids = [a.id for a in candidates]
            raise AmbiguousMatch(
                f"{len(ids)} automations of user {user_id} listen for {event.kind.value}",
                ids,
            )
        return self._resolve(candidates[0], event)

    def claim(self, automation_id: str, event: TriggerEvent) -> None:
        key = dedup_key(automation_id, event)
        if not self._dedup.claim(key):
            raise DuplicateDispatch(f"Event {key} was already dispatched")

    def is_live(self, automation_id: str) -> bool:
        """Return whether the automation still exists and is active."""

        automation = self._automations.get_automation(automation_id)
        return automation is not None and automation.is_active

    def _resolve(self, automation: Automation, event: TriggerEvent) -> ResolvedAutomation:
        if not automation.is_active:
            raise AutomationInactive(f"Automation {automation.id} is inactive")
        if automation.trigger_kind is not event.kind:
            raise TriggerKindMismatch(
                f"Automation {automation.id} listens for {automation.trigger_kind.value}, "
                f"got {event.kind.value}"
            )
        try:
            definition = get_template_definition(automation.template_definition_id)
        except KeyError as exc:
            raise UnknownTemplateDefinition(str(exc)) from exc

        connection = None
        if automation.connection_id:
            connection = self._connections.get_connection(automation.connection_id)
        expected = connection.platform if connection else definition.trigger.platform
        if expected is not None and expected is not event.source_platform:
            raise PlatformMismatch(
                f"Automation {automation.id} expects {expected.value} events, "
                f"got {event.source_platform.value}"
            )

        try:
            config = definition.validate_config(_config_with_record_ids(automation))
        except ValidationError as exc:
            raise InvalidAutomationConfig(
                f"Automation {automation.id} has an invalid config: {exc.error_count()} error(s)"
            ) from exc

        return ResolvedAutomation(
            automation=automation,
            definition=definition,
            config=config,
            connection=connection,
        )


def _config_with_record_ids(automation: Automation) -> dict[str, Any]:
    config = dict(automation.config)
    for key, attribute in _RECORD_FALLBACKS.items():
        if key in config or to_camel(key) in config:
            continue
        value = getattr(automation, attribute)
        if value:
            config[key] = value
    return config


__all__ = ["RuleMatcher"]
