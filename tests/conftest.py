import json
import pathlib
import sys
import threading
from dataclasses import dataclass, field
from typing import Any

import pytest
import requests
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from whatsappier.app_logging import init_logging
from whatsappier.automations.correlator import ReplyCorrelator
from whatsappier.automations.dedup import InMemoryDedupWindow
from whatsappier.automations.dispatcher import ActionDispatcher, RetryPolicy
from whatsappier.automations.matcher import RuleMatcher
from whatsappier.automations.models import (
    Automation,
    Connection,
    Device,
    DeviceStatus,
    MessageTemplate,
    Platform,
    TriggerKind,
)
from whatsappier.automations.outcomes import InMemoryOutcomeRecorder
from whatsappier.automations.reply_handlers import (
    OrderConfirmationHandler,
    OtpCodeHandler,
)
from whatsappier.automations.repository import InMemoryStore
from whatsappier.core.config import EngineSettings
from whatsappier.ingestion.pipeline import AutomationPipeline, build_pipeline
from whatsappier.ingestion.runner import KeyedWorkPool

USER_ID = "user-1"
EVOLUTION_URL = "https://evo.example"
SHEETS_URL = "https://sheets.example/v4"
LIGHTFUNNELS_URL = "https://lf.example"

ORDER_TEMPLATE = "Hi {{customer_name}}, your order {{order_number}} ({{total_amount}}) is confirmed."
RECOVERY_TEMPLATE = "Hi {{customer_name}}, complete your order: {{recovery_url}}"


# ----------------------------------------------------------------------
# HTTP fakes


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None):
        self.status_code = status_code
        self._payload = payload
        self.content = b"" if payload is None else json.dumps(payload).encode("utf-8")

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    """Stands in for ``requests.Session``.

    Queued results (responses or exceptions) are consumed first; afterwards
    each platform gets a canned successful answer.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.queue: list[Any] = []
        self._lock = threading.Lock()

    def request(self, method: str, url: str, **kwargs: Any) -> FakeResponse:
        with self._lock:
            self.calls.append({"method": method, "url": url, **kwargs})
            queued = self.queue.pop(0) if self.queue else None
        if isinstance(queued, BaseException):
            raise queued
        if queued is not None:
            return queued
        if "/message/sendText/" in url:
            return FakeResponse(200, {"key": {"id": f"msg-{len(self.calls)}"}})
        if ":append" in url:
            return FakeResponse(200, {"updates": {"updatedRange": "Sheet1!A2:H2"}})
        if url.endswith("/api2"):
            variables = kwargs.get("json", {}).get("variables", {})
            return FakeResponse(
                200,
                {
                    "data": {
                        "updateOrder": {
                            "id": variables.get("id"),
                            "tags": variables.get("node", {}).get("tags"),
                        }
                    }
                },
            )
        return FakeResponse(404, {"error": "not found"})

    def sent_messages(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if "/message/sendText/" in c["url"]]

    def appended_rows(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if ":append" in c["url"]]

    def graphql_calls(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["url"].endswith("/api2")]


class FakeRedis:
    """Implements the subset of ``redis.Redis`` used by the engine."""

    def __init__(self) -> None:
        self.store: dict[str, Any] = {}
        self.expiries: dict[str, int] = {}
        self.zsets: dict[str, dict[str, float]] = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    def zadd(self, key, mapping):
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    def zrangebyscore(self, key, min, max, start=None, num=None):
        low = float(min)
        members = sorted(
            (score, member)
            for member, score in self.zsets.get(key, {}).items()
            if low <= score <= float(max)
        )
        selected = [member.encode("utf-8") for _, member in members]
        if start is not None and num is not None:
            selected = selected[start : start + num]
        return selected

    def zrem(self, key, *members):
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            name = member.decode("utf-8") if isinstance(member, bytes) else member
            if zset.pop(name, None) is not None:
                removed += 1
        return removed

    def zcard(self, key):
        return len(self.zsets.get(key, {}))



class FakeEvolution:
    """Records sends; ``failures`` are raised in order before succeeding."""

    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.sent: list[tuple[str, str, str]] = []

    def send_text(self, instance, number, text):
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append((instance, number, text))
        return {"key": {"id": f"wamid-{len(self.sent)}"}}


class FakeSheets:
    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.rows: list[tuple[str, str, list]] = []

    def append_row(self, spreadsheet_id, worksheet, values):
        if self.failures:
            raise self.failures.pop(0)
        self.rows.append((spreadsheet_id, worksheet, values))
        return {"updates": {"updatedRange": f"{worksheet}!A{len(self.rows) + 1}"}}


class FakeLightfunnels:
    def __init__(self):
        self.tagged: list[tuple[str, list[str]]] = []

    def update_order_tags(self, order_id, tags):
        self.tagged.append((order_id, tags))
        return {"id": order_id, "tags": tags}


# ----------------------------------------------------------------------
# Records and payloads


def make_store() -> InMemoryStore:
    """A user with one connected device and one automation per template."""

    return InMemoryStore(
        connections=[
            Connection(
                id="conn-lf",
                user_id=USER_ID,
                platform=Platform.LIGHTFUNNELS,
                credentials={"access_token": "lf-token"},
            ),
            Connection(
                id="conn-gs",
                user_id=USER_ID,
                platform=Platform.GOOGLE_SHEETS,
                credentials={"accessToken": "gs-token"},
            ),
        ],
        devices=[
            Device(
                id="dev-1",
                user_id=USER_ID,
                name="shop-1",
                status=DeviceStatus.CONNECTED,
                api_url=EVOLUTION_URL,
                api_key="evo-key",
            ),
        ],
        templates=[
            MessageTemplate(id="tpl-order", user_id=USER_ID, name="Order", content=ORDER_TEMPLATE),
            MessageTemplate(
                id="tpl-recovery", user_id=USER_ID, name="Recovery", content=RECOVERY_TEMPLATE
            ),
        ],
        automations=[
            Automation(
                id="auto-order",
                user_id=USER_ID,
                template_definition_id="lf-order-to-whatsapp",
                trigger_kind=TriggerKind.ORDER_CONFIRMED,
                connection_id="conn-lf",
                device_id="dev-1",
                template_id="tpl-order",
            ),
            Automation(
                id="auto-recovery",
                user_id=USER_ID,
                template_definition_id="lf-abandoned-checkout-recovery",
                trigger_kind=TriggerKind.CHECKOUT_CREATED,
                connection_id="conn-lf",
                device_id="dev-1",
                template_id="tpl-recovery",
                config={"delayMinutes": 5},
            ),
            Automation(
                id="auto-otp",
                user_id=USER_ID,
                template_definition_id="lf-otp-verification",
                trigger_kind=TriggerKind.CHECKOUT_OTP_REQUESTED,
                device_id="dev-1",
            ),
            Automation(
                id="auto-sheet",
                user_id=USER_ID,
                template_definition_id="gsheets-order-sync",
                trigger_kind=TriggerKind.ORDER_CONFIRMED,
                connection_id="conn-lf",
                config={
                    "googleSheetsConnectionId": "conn-gs",
                    "googleSheetId": "sheet-123",
                },
            ),
        ],
    )


def order_payload(order_id="ord-1", **overrides) -> dict[str, Any]:
    node = {
        "id": order_id,
        "name": "#1001",
        "email": "ana@example.com",
        "phone": "+212 600-123456",
        "total": 49.9,
        "subtotal": 45,
        "currency": "MAD",
        "funnel_id": "funnel-1",
        "store_id": "store-1",
        "financial_status": "paid",
        "fulfillment_status": "unfulfilled",
        "created_at": "2024-05-01T10:00:00Z",
        "customer": {"full_name": "Ana Lopez"},
        "shipping_address": {"country": "MA", "city": "Rabat"},
        "billing_address": {"country_code": "MA"},
        "items": [{"id": "i1"}, {"id": "i2"}],
    }
    node.update(overrides)
    return {"node": node}


def checkout_payload(checkout_id="chk-1", **overrides) -> dict[str, Any]:
    node = {
        "id": checkout_id,
        "contact_email": "ana@example.com",
        "contact_phone": "00212600123456",
        "recover_url": "https://x/y",
        "funnel_id": "funnel-1",
        "customer": {"full_name": "Ana"},
    }
    node.update(overrides)
    return {"node": node}


def reply_payload(text="yes", phone="212600123456", from_me=False) -> dict[str, Any]:
    return {
        "event": "messages.upsert",
        "instance": "shop-1",
        "data": {
            "key": {
                "remoteJid": f"{phone}@s.whatsapp.net",
                "fromMe": from_me,
                "id": "in-1",
            },
            "pushName": "Ana",
            "message": {"conversation": text},
        },
    }


# ----------------------------------------------------------------------
# Engine builders


@dataclass
class Engine:
    store: InMemoryStore
    recorder: InMemoryOutcomeRecorder
    correlator: ReplyCorrelator
    matcher: RuleMatcher
    dispatcher: ActionDispatcher
    evolution: FakeEvolution
    sheets: FakeSheets
    lightfunnels: FakeLightfunnels
    otp_codes: list[str] = field(default_factory=list)

    def pipeline(self, max_pending: int = 100, delayed_jobs=None) -> AutomationPipeline:
        return AutomationPipeline(
            matcher=self.matcher,
            dispatcher=self.dispatcher,
            correlator=self.correlator,
            recorder=self.recorder,
            devices=self.store,
            pool=KeyedWorkPool(max_workers=4, max_pending=max_pending),
            delayed_jobs=delayed_jobs,
        )


def make_engine(
    store: InMemoryStore | None = None,
    *,
    evolution: FakeEvolution | None = None,
    sheets: FakeSheets | None = None,
    retry_policy: RetryPolicy | None = None,
) -> Engine:
    store = store or make_store()
    recorder = InMemoryOutcomeRecorder()
    evolution = evolution or FakeEvolution()
    sheets = sheets or FakeSheets()
    lightfunnels = FakeLightfunnels()
    otp_codes: list[str] = []

    def otp_generator(length: int) -> str:
        code = str(len(otp_codes) + 1).zfill(length)
        otp_codes.append(code)
        return code

    correlator = ReplyCorrelator(
        handlers={
            "order_confirmation": OrderConfirmationHandler(store, lambda c: lightfunnels),
            "otp_code": OtpCodeHandler(),
        },
        recorder=recorder,
    )
    matcher = RuleMatcher(store, store, InMemoryDedupWindow(600))
    dispatcher = ActionDispatcher(
        devices=store,
        templates=store,
        connections=store,
        correlator=correlator,
        is_live=matcher.is_live,
        evolution_factory=lambda device: evolution,
        sheets_factory=lambda connection: sheets,
        lightfunnels_factory=lambda connection: lightfunnels,
        retry_policy=retry_policy or RetryPolicy(max_attempts=3, base_delay=0),
        otp_generator=otp_generator,
    )
    return Engine(
        store=store,
        recorder=recorder,
        correlator=correlator,
        matcher=matcher,
        dispatcher=dispatcher,
        evolution=evolution,
        sheets=sheets,
        lightfunnels=lightfunnels,
        otp_codes=otp_codes,
    )


@pytest.fixture
def engine() -> Engine:
    return make_engine()


@pytest.fixture
def test_settings() -> EngineSettings:
    return EngineSettings(
        worker_max_threads=2,
        worker_max_pending=50,
        dispatch_backoff_base_seconds=0,
        lightfunnels_api_url=LIGHTFUNNELS_URL,
        google_sheets_api_url=SHEETS_URL,
        evolution_api_url=EVOLUTION_URL,
        evolution_api_key="server-key",
    )


@pytest.fixture
def wired(test_settings):
    """A pipeline built by ``build_pipeline`` over fake HTTP and store."""

    store = make_store()
    recorder = InMemoryOutcomeRecorder()
    session = FakeSession()
    pipeline = build_pipeline(
        test_settings,
        stores=store,
        recorder=recorder,
        session=session,  # type: ignore[arg-type]
        start_sweeper=False,
    )
    yield pipeline, store, recorder, session
    pipeline.shutdown()


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app


@pytest.fixture
def timeout_error() -> requests.Timeout:
    return requests.Timeout("read timed out")
