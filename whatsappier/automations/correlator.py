"""Pending-reply state machine.

A pending reply is opened after an outbound message that expects an answer
(an order confirmation, an OTP code). Records move from ``pending`` to
exactly one of ``resolved``, ``expired`` or ``superseded`` and never leave a
terminal state. Transitions happen under a single lock, so two concurrent
replies for the same token resolve it at most once.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol

from .errors import AutomationEngineError
from .models import (
    PendingReply,
    PendingReplyState,
    ReplyOutcome,
    ReplyStatus,
    TriggerEvent,
    utcnow,
)
from .outcomes import OutcomeRecorder

logger = logging.getLogger(__name__)


def order_confirmation_token(device_id: str, phone: str) -> str:
    return f"device:{device_id}:{phone}"


def otp_token(automation_id: str, phone: str) -> str:
    return f"otp:{automation_id}:{phone}"


class ReplyHandler(Protocol):
    def accepts(self, pending: PendingReply, reply: TriggerEvent) -> bool:
        """Decide whether ``reply`` answers ``pending``; must not side-effect."""

    def on_resolved(self, pending: PendingReply, reply: TriggerEvent) -> Dict[str, Any]:
        """Run the continuation once the record is resolved."""


class ReplyCorrelator:
    def __init__(
        self,
        *,
        handlers: Mapping[str, ReplyHandler] | None = None,
        recorder: OutcomeRecorder | None = None,
        grace_seconds: float = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._handlers: Dict[str, ReplyHandler] = dict(handlers or {})
        self._recorder = recorder
        self._grace = timedelta(seconds=grace_seconds)
        self._clock = clock
        self._records: Dict[str, PendingReply] = {}
        self._lock = threading.Lock()

    def register_handler(self, name: str, handler: ReplyHandler) -> None:
        self._handlers[name] = handler

    def open(
        self,
        token: str,
        *,
        automation_id: str,
        destination: str,
        reply_handler: str,
        ttl: timedelta,
        context: Dict[str, Any] | None = None,
    ) -> PendingReply:
        """Create a pending record, superseding any pending one for ``token``."""

        now = self._clock()
        record = PendingReply(
            token=token,
            automation_id=automation_id,
            destination=destination,
            reply_handler=reply_handler,
            created_at=now,
            expires_at=now + ttl,
            context=dict(context or {}),
        )
        with self._lock:
            previous = self._records.get(token)
            if previous is not None and previous.state is PendingReplyState.PENDING:
                previous.state = PendingReplyState.SUPERSEDED
                previous.finished_at = now
                logger.info(
                    "Pending reply %s from automation %s superseded",
                    token,
                    previous.automation_id,
                )
            self._records[token] = record
        return replace(record)

    def get(self, token: str) -> Optional[PendingReply]:
        """Return a snapshot of the record for ``token``, expiring it if overdue."""

        now = self._clock()
        with self._lock:
            record = self._records.get(token)
            if record is None:
                return None
            self._expire_if_overdue(record, now)
            return replace(record)

    def resolve(self, token: str, reply: TriggerEvent) -> ReplyOutcome:
        now = self._clock()
        with self._lock:
            record = self._records.get(token)
            if record is not None:
                self._expire_if_overdue(record, now)
            if record is None or record.state is not PendingReplyState.PENDING:
                return self._finish(ReplyOutcome(ReplyStatus.NO_MATCHING_PENDING_REPLY, token))

        handler = self._handlers.get(record.reply_handler)
        if handler is None:
            logger.warning(
                "No reply handler '%s' registered for %s", record.reply_handler, token
            )
            return self._finish(
                ReplyOutcome(
                    ReplyStatus.NO_MATCHING_PENDING_REPLY,
                    token,
                    automation_id=record.automation_id,
                    error=f"unknown reply handler {record.reply_handler}",
                )
            )

        if not handler.accepts(record, reply):
            return self._finish(
                ReplyOutcome(ReplyStatus.REJECTED, token, automation_id=record.automation_id)
            )

        with self._lock:
            current = self._records.get(token)
            if current is not record or record.state is not PendingReplyState.PENDING:
                return self._finish(ReplyOutcome(ReplyStatus.NO_MATCHING_PENDING_REPLY, token))
            record.state = PendingReplyState.RESOLVED
            record.finished_at = now

        outcome = ReplyOutcome(ReplyStatus.RESOLVED, token, automation_id=record.automation_id)
        try:
            outcome.details = handler.on_resolved(record, reply) or {}
        except AutomationEngineError as exc:
            logger.warning("Continuation for %s failed: %s", token, exc)
            outcome.error = str(exc)
        return self._finish(outcome)

    def sweep(self, now: datetime | None = None) -> Dict[str, int]:
        """Expire overdue records and drop terminal ones past the grace period."""

        now = now or self._clock()
        expired = removed = 0
        with self._lock:
            for token, record in list(self._records.items()):
                if self._expire_if_overdue(record, now):
                    expired += 1
                if (
                    record.state is not PendingReplyState.PENDING
                    and record.finished_at is not None
                    and now - record.finished_at >= self._grace
                ):
                    del self._records[token]
                    removed += 1
        if expired or removed:
            logger.debug("Reply sweep expired=%s removed=%s", expired, removed)
        return {"expired": expired, "removed": removed}

    def pending_count(self) -> int:
        with self._lock:
            return sum(
                1 for r in self._records.values() if r.state is PendingReplyState.PENDING
            )

    @staticmethod
    def _expire_if_overdue(record: PendingReply, now: datetime) -> bool:
        if record.is_overdue(now):
            record.state = PendingReplyState.EXPIRED
            record.finished_at = now
            return True
        return False

    def _finish(self, outcome: ReplyOutcome) -> ReplyOutcome:
        if self._recorder is not None:
            self._recorder.record_reply(outcome)
        return outcome


__all__ = [
    "ReplyCorrelator",
    "ReplyHandler",
    "order_confirmation_token",
    "otp_token",
]
