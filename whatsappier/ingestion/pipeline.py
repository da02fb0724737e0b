"""Wire normalizer, matcher, dispatcher and correlator behind the webhooks.

Normalization runs in the request thread so the partition key is known
before the event is queued; matching and dispatching run on the worker
pool. Business errors never reach the HTTP caller: they are logged and
recorded as outcomes.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Optional

import requests

from ..automations.correlator import ReplyCorrelator, order_confirmation_token, otp_token
from ..automations.dedup import create_dedup_window
from ..automations.dispatcher import ActionDispatcher, RetryPolicy
from ..automations.errors import (
    AmbiguousMatch,
    AutomationEngineError,
    DuplicateDispatch,
    MatchError,
    NoMatchingAutomation,
    NormalizationError,
    StoreUnavailable,
)
from ..automations.matcher import RuleMatcher
from ..automations.models import (
    Connection,
    Device,
    DispatchOutcome,
    DispatchStatus,
    Platform,
    ReplyOutcome,
    ReplyStatus,
    ResolvedAutomation,
    SourceHint,
    TriggerEvent,
    TriggerKind,
)
from ..automations.normalizer import normalize
from ..automations.outcomes import LoggingOutcomeRecorder, OutcomeRecorder
from ..automations.reply_handlers import (
    OrderConfirmationHandler,
    OtpCodeHandler,
    build_reply_classifier,
)
from ..automations.repository import InMemoryStore, PostgresStore
from ..channels.base import as_text
from ..channels.lightfunnels import checkout_phone
from ..core.config import EngineSettings, get_settings
from ..core.db import connection_factory
from ..integrations import EvolutionClient, GoogleSheetsClient, LightfunnelsClient
from .runner import KeyedWorkPool, PeriodicSweeper
from .scheduler import (
    DelayedDispatchScheduler,
    DelayedJob,
    DelayedJobStore,
    InMemoryDelayedJobStore,
    create_delayed_job_store,
)

logger = logging.getLogger(__name__)


@dataclass
class IngestReceipt:
    accepted: bool
    message: str


class AutomationPipeline:
    def __init__(
        self,
        *,
        matcher: RuleMatcher,
        dispatcher: ActionDispatcher,
        correlator: ReplyCorrelator,
        recorder: OutcomeRecorder,
        devices: Any,
        pool: KeyedWorkPool,
        delayed_jobs: DelayedJobStore | None = None,
        sweep_interval: float | None = None,
        delayed_poll_interval: float | None = None,
    ) -> None:
        self.matcher = matcher
        self.dispatcher = dispatcher
        self.correlator = correlator
        self.recorder = recorder
        self.devices = devices
        self.pool = pool
        self.scheduler = DelayedDispatchScheduler(
            delayed_jobs if delayed_jobs is not None else InMemoryDelayedJobStore(),
            lambda key, fn: self.pool.submit(key, fn),
            self._run_delayed,
        )
        self._sweepers: list[PeriodicSweeper] = []
        if sweep_interval:
            self._sweepers.append(
                PeriodicSweeper(sweep_interval, self.correlator.sweep, name="reply-sweeper")
            )
        if delayed_poll_interval:
            self._sweepers.append(
                PeriodicSweeper(
                    delayed_poll_interval, self.scheduler.poll, name="delayed-dispatch-poller"
                )
            )
        for sweeper in self._sweepers:
            sweeper.start()

    # ------------------------------------------------------------------
    # Entry points (request thread)
    # ------------------------------------------------------------------

    def ingest_for_automation(
        self,
        automation_id: str,
        payload: Any,
        hint: SourceHint | None = None,
    ) -> IngestReceipt:
        """Normalize ``payload`` and queue it for ``automation_id``.

        Raises :class:`WorkPoolSaturated` when the pool cannot take more
        work; every other failure is acknowledged.
        """

        event = self._normalize(hint or SourceHint(), payload, f"automation {automation_id}")
        if event is None:
            return IngestReceipt(False, "Webhook received, payload ignored")
        self.pool.submit(
            event.partition_key,
            lambda cancel: self._run_for_automation(automation_id, event, cancel),
        )
        return IngestReceipt(True, "Webhook received, processing initiated")

    def ingest_for_platform(
        self, user_id: str, platform: Platform, payload: Any, *, topic: str | None = None
    ) -> IngestReceipt:
        hint = SourceHint(platform=platform, topic=topic)
        event = self._normalize(hint, payload, f"user {user_id} on {platform.value}")
        if event is None:
            return IngestReceipt(False, "Webhook received, payload ignored")
        self.pool.submit(
            event.partition_key,
            lambda cancel: self._run_for_platform(user_id, platform, event, cancel),
        )
        return IngestReceipt(True, "Webhook received, processing initiated")

    def ingest_reply(self, instance_name: str, payload: Any) -> IngestReceipt:
        hint = SourceHint(platform=Platform.WHATSAPP, instance_name=instance_name)
        event = self._normalize(hint, payload, f"instance {instance_name}")
        if event is None or event.kind is not TriggerKind.GENERIC_REPLY:
            return IngestReceipt(False, "Event/Message ignored")
        self.pool.submit(
            event.partition_key, lambda cancel: self._run_reply(instance_name, event)
        )
        return IngestReceipt(True, "Reply received, processing initiated")

    def ingest_otp_request(self, automation_id: str, payload: Any) -> IngestReceipt:
        hint = SourceHint(
            platform=Platform.LIGHTFUNNELS, kind=TriggerKind.CHECKOUT_OTP_REQUESTED
        )
        return self.ingest_for_automation(automation_id, payload, hint)

    def verify_otp(self, automation_id: str, payload: Mapping[str, Any]) -> bool:
        """Check an OTP code synchronously; the checkout script waits on it.

        Raises :class:`StoreUnavailable` when the automation cannot be read.
        """

        phone = checkout_phone(payload)
        code = as_text(payload.get("otp")) or as_text(payload.get("code"))
        if not phone or not code:
            return False
        if not self.matcher.is_live(automation_id):
            logger.info("OTP verification for inactive automation %s", automation_id)
            return False
        reply = TriggerEvent(
            kind=TriggerKind.GENERIC_REPLY,
            source_platform=Platform.LIGHTFUNNELS,
            correlation_key=phone,
            fields={"phone": phone, "code": code},
            raw_payload=dict(payload),
        )
        outcome = self.correlator.resolve(otp_token(automation_id, phone), reply)
        return outcome.status is ReplyStatus.RESOLVED

    def shutdown(self, wait: bool = True) -> None:
        for sweeper in self._sweepers:
            sweeper.stop()
        self.pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def _normalize(self, hint: SourceHint, payload: Any, target: str) -> Optional[TriggerEvent]:
        try:
            return normalize(hint, payload)
        except NormalizationError as exc:
            logger.info(
                "Dropping payload for %s: %s (%s)", target, exc, exc.__class__.__name__
            )
            return None

    def _run_for_automation(
        self, automation_id: str, event: TriggerEvent, cancel: threading.Event
    ) -> None:
        try:
            resolved = self.matcher.match(automation_id, event)
        except MatchError as exc:
            self._record_match_error(automation_id, event, exc)
            return
        except Exception as exc:
            self._record_failure(automation_id, event, exc)
            return
        self._claim_and_execute(resolved, event, cancel)

    def _run_for_platform(
        self,
        user_id: str,
        platform: Platform,
        event: TriggerEvent,
        cancel: threading.Event,
    ) -> None:
        try:
            resolved = self.matcher.match_platform(user_id, platform, event)
        except MatchError as exc:
            self._record_match_error(None, event, exc)
            return
        except Exception as exc:
            self._record_failure(None, event, exc)
            return
        self._claim_and_execute(resolved, event, cancel)

    def _claim_and_execute(
        self, resolved: ResolvedAutomation, event: TriggerEvent, cancel: threading.Event
    ) -> None:
        automation_id = resolved.automation.id
        key = resolved.definition.delay_config_key
        delay_minutes = getattr(resolved.config, key, 0) if key else 0
        try:
            if resolved.definition.deduplicate:
                self.matcher.claim(automation_id, event)
            if delay_minutes:
                job = self.scheduler.schedule(delay_minutes * 60, automation_id, event)
        except DuplicateDispatch as exc:
            logger.info("Skipping duplicate delivery: %s", exc)
            return
        except Exception as exc:
            self._record_failure(automation_id, event, exc)
            return
        if delay_minutes:
            logger.info(
                "Dispatch for automation %s (key=%s) scheduled in %s min as job %s",
                automation_id,
                event.correlation_key,
                delay_minutes,
                job.job_id,
            )
            return
        self._dispatch(resolved, event, cancel)

    def _run_delayed(self, job: DelayedJob, cancel: threading.Event) -> None:
        event = job.event
        try:
            resolved = self.matcher.match(job.automation_id, event)
        except MatchError as exc:
            self._record(
                DispatchOutcome(
                    status=DispatchStatus.FAILED,
                    automation_id=job.automation_id,
                    event_kind=event.kind,
                    correlation_key=event.correlation_key,
                    error="cancelled",
                    details={"reason": f"{exc.__class__.__name__}: {exc}"},
                )
            )
            return
        except Exception as exc:
            self._record_failure(job.automation_id, event, exc)
            return
        self._dispatch(resolved, event, cancel)

    def _dispatch(
        self, resolved: ResolvedAutomation, event: TriggerEvent, cancel: threading.Event
    ) -> None:
        outcome = self.dispatcher.dispatch(resolved, event, cancel)
        self._record(outcome)

    def _run_reply(self, instance_name: str, event: TriggerEvent) -> None:
        try:
            device = self.devices.get_device_by_name(instance_name)
        except StoreUnavailable as exc:
            logger.warning("Could not look up instance %s; reply dropped: %s", instance_name, exc)
            self.recorder.record_reply(
                ReplyOutcome(
                    ReplyStatus.NO_MATCHING_PENDING_REPLY,
                    token="",
                    error=f"{exc.__class__.__name__}: {exc}",
                )
            )
            return
        if device is None:
            logger.warning("Device not found for instance %s; reply ignored", instance_name)
            self.recorder.record_reply(
                ReplyOutcome(
                    ReplyStatus.NO_MATCHING_PENDING_REPLY,
                    token="",
                    error=f"unknown instance {instance_name}",
                )
            )
            return
        token = order_confirmation_token(device.id, event.correlation_key)
        self.correlator.resolve(token, event)

    def _record_match_error(
        self, automation_id: str | None, event: TriggerEvent, exc: MatchError
    ) -> None:
        skipped = isinstance(exc, (NoMatchingAutomation, AmbiguousMatch))
        details: dict[str, Any] = {"category": "configuration"}
        if isinstance(exc, AmbiguousMatch):
            details["candidates"] = exc.candidates
        self._record(
            DispatchOutcome(
                status=DispatchStatus.SKIPPED if skipped else DispatchStatus.FAILED,
                automation_id=automation_id,
                event_kind=event.kind,
                correlation_key=event.correlation_key,
                error=f"{exc.__class__.__name__}: {exc}",
                details=details,
            )
        )

    def _record_failure(
        self, automation_id: str | None, event: TriggerEvent, exc: Exception
    ) -> None:
        """Record an event that failed before reaching the dispatcher."""

        if isinstance(exc, AutomationEngineError):
            logger.warning(
                "Event %s for automation %s failed: %s", event.partition_key, automation_id, exc
            )
        else:
            logger.exception(
                "Event %s for automation %s crashed", event.partition_key, automation_id
            )
        category = "store" if isinstance(exc, StoreUnavailable) else "internal"
        self._record(
            DispatchOutcome(
                status=DispatchStatus.FAILED,
                automation_id=automation_id,
                event_kind=event.kind,
                correlation_key=event.correlation_key,
                retryable=getattr(exc, "retryable", False),
                error=f"{exc.__class__.__name__}: {exc}",
                details={"category": category},
            )
        )

    def _record(self, outcome: DispatchOutcome) -> None:
        self.recorder.record(outcome)


# ----------------------------------------------------------------------
# Construction


def build_pipeline(
    settings: EngineSettings,
    *,
    stores: Any = None,
    recorder: OutcomeRecorder | None = None,
    session: requests.Session | None = None,
    start_sweeper: bool = True,
) -> AutomationPipeline:
    """Assemble a pipeline from ``settings``.

    ``stores`` must implement every store protocol; when omitted a
    PostgreSQL store is used if ``DATABASE_URL`` is set, otherwise an empty
    in-memory store.
    """

    if stores is None:
        if settings.database_url:
            stores = PostgresStore(connection_factory(settings))
        else:
            logger.warning("DATABASE_URL not set; using an empty in-memory store")
            stores = InMemoryStore()
    recorder = recorder or LoggingOutcomeRecorder()
    session = session or requests.Session()
    timeout = settings.http_timeout_seconds

    def evolution_factory(device: Device) -> EvolutionClient:
        return EvolutionClient.for_device(
            device,
            default_url=settings.evolution_api_url,
            default_key=settings.evolution_api_key,
            session=session,
            timeout=timeout,
        )

    def sheets_factory(connection: Connection) -> GoogleSheetsClient:
        return GoogleSheetsClient.for_connection(
            connection,
            api_url=settings.google_sheets_api_url,
            session=session,
            timeout=timeout,
        )

    def lightfunnels_factory(connection: Connection) -> LightfunnelsClient:
        return LightfunnelsClient.for_connection(
            connection,
            api_url=settings.lightfunnels_api_url,
            session=session,
            timeout=timeout,
        )

    correlator = ReplyCorrelator(
        handlers={
            "order_confirmation": OrderConfirmationHandler(
                stores,
                lightfunnels_factory,
                build_reply_classifier(
                    settings.openai_api_key,
                    model=settings.openai_model,
                    timeout=timeout,
                ),
            ),
            "otp_code": OtpCodeHandler(),
        },
        recorder=recorder,
        grace_seconds=settings.reply_grace_seconds,
    )
    matcher = RuleMatcher(
        stores,
        stores,
        create_dedup_window(settings.redis_url, settings.dedup_window_seconds),
    )
    dispatcher = ActionDispatcher(
        devices=stores,
        templates=stores,
        connections=stores,
        correlator=correlator,
        is_live=matcher.is_live,
        evolution_factory=evolution_factory,
        sheets_factory=sheets_factory,
        lightfunnels_factory=lightfunnels_factory,
        retry_policy=RetryPolicy(
            max_attempts=settings.dispatch_max_attempts,
            base_delay=settings.dispatch_backoff_base_seconds,
            max_delay=settings.dispatch_backoff_max_seconds,
        ),
    )
    return AutomationPipeline(
        matcher=matcher,
        dispatcher=dispatcher,
        correlator=correlator,
        recorder=recorder,
        devices=stores,
        pool=KeyedWorkPool(
            max_workers=settings.worker_max_threads,
            max_pending=settings.worker_max_pending,
        ),
        delayed_jobs=create_delayed_job_store(settings.redis_url),
        sweep_interval=settings.reply_sweep_interval_seconds if start_sweeper else None,
        delayed_poll_interval=(
            settings.delayed_poll_interval_seconds if start_sweeper else None
        ),
    )


_pipeline: AutomationPipeline | None = None
_pipeline_lock = threading.Lock()


def get_pipeline() -> AutomationPipeline:
    """FastAPI dependency returning the process-wide pipeline."""

    global _pipeline
    with _pipeline_lock:
        if _pipeline is None:
            _pipeline = build_pipeline(get_settings())
        return _pipeline


def shutdown_pipeline() -> None:
    global _pipeline
    with _pipeline_lock:
        pipeline, _pipeline = _pipeline, None
    if pipeline is not None:
        pipeline.shutdown()
