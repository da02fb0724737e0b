"""Where dispatch and reply outcomes end up."""

from __future__ import annotations

import logging
import threading
from typing import List, Protocol

from prometheus_client import Counter

from .models import DispatchOutcome, DispatchStatus, ReplyOutcome

logger = logging.getLogger(__name__)

DISPATCH_OUTCOMES = Counter(
    "whatsappier_dispatch_outcomes_total",
    "Dispatch outcomes by action kind and status",
    ["action_kind", "status"],
)
REPLY_OUTCOMES = Counter(
    "whatsappier_reply_outcomes_total",
    "Reply correlation outcomes by status",
    ["status"],
)


class OutcomeRecorder(Protocol):
    def record(self, outcome: DispatchOutcome) -> None: ...

    def record_reply(self, outcome: ReplyOutcome) -> None: ...


class LoggingOutcomeRecorder:
    """Write one log line per outcome and update the Prometheus counters."""

    def record(self, outcome: DispatchOutcome) -> None:
        action = outcome.action_kind.value if outcome.action_kind else "none"
        DISPATCH_OUTCOMES.labels(action_kind=action, status=outcome.status.value).inc()
        level = logging.WARNING if outcome.status is DispatchStatus.FAILED else logging.INFO
        logger.log(
            level,
            "Dispatch %s automation=%s kind=%s key=%s action=%s attempts=%s external_id=%s error=%s",
            outcome.status.value,
            outcome.automation_id,
            outcome.event_kind.value,
            outcome.correlation_key,
            action,
            outcome.attempts,
            outcome.external_id,
            outcome.error,
        )

    def record_reply(self, outcome: ReplyOutcome) -> None:
        REPLY_OUTCOMES.labels(status=outcome.status.value).inc()
        logger.info(
            "Reply %s token=%s automation=%s details=%s",
            outcome.status.value,
            outcome.token,
            outcome.automation_id,
            outcome.details,
        )


class InMemoryOutcomeRecorder(LoggingOutcomeRecorder):
    """Keeps every outcome in memory in addition to logging it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.outcomes: List[DispatchOutcome] = []
        self.replies: List[ReplyOutcome] = []

    def record(self, outcome: DispatchOutcome) -> None:
        super().record(outcome)
        with self._lock:
            self.outcomes.append(outcome)

    def record_reply(self, outcome: ReplyOutcome) -> None:
        super().record_reply(outcome)
        with self._lock:
            self.replies.append(outcome)

    def for_automation(self, automation_id: str) -> List[DispatchOutcome]:
        with self._lock:
            return [o for o in self.outcomes if o.automation_id == automation_id]

    def with_status(self, status: DispatchStatus) -> List[DispatchOutcome]:
        with self._lock:
            return [o for o in self.outcomes if o.status is status]


__all__ = [
    "DISPATCH_OUTCOMES",
    "InMemoryOutcomeRecorder",
    "LoggingOutcomeRecorder",
    "OutcomeRecorder",
]
