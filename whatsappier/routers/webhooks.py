"""Webhook intake routes for platform events and WhatsApp replies.

Every route acknowledges quickly: the body is parsed and normalized in the
request, the rest happens on the worker pool. Only malformed JSON, unknown
platforms, bad signatures and a saturated pool are reported back to the
caller.
"""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..automations.models import Platform
from ..channels import get_adapter
from ..ingestion.pipeline import AutomationPipeline, IngestReceipt, get_pipeline
from ..ingestion.runner import WorkPoolClosed, WorkPoolSaturated

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

RETRY_AFTER_SECONDS = "5"


async def read_json_body(request: Request, platform: Platform | None = None) -> Any:
    """Parse the request body, checking the sender's signature first.

    ``platform`` selects the payload adapter whose ``verify_signature`` hook
    vets the raw bytes; platforms without an adapter are not checked.
    """

    body_bytes = await request.body()
    if platform is not None:
        try:
            adapter = get_adapter(platform)
        except KeyError:
            adapter = None
        if adapter is not None and not adapter.verify_signature(request.headers, body_bytes):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature"
            )
    try:
        return json.loads(body_bytes.decode("utf-8")) if body_bytes else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid JSON payload: {exc}"
        ) from exc


def _busy(exc: RuntimeError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(exc),
        headers={"Retry-After": RETRY_AFTER_SECONDS},
    )


def _receipt(receipt: IngestReceipt) -> dict[str, Any]:
    return {"success": True, "message": receipt.message, "accepted": receipt.accepted}


@router.post("/whatsapp/{instance_name}")
async def whatsapp_reply(
    instance_name: str,
    request: Request,
    pipeline: AutomationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Inbound WhatsApp messages forwarded by the Evolution instance."""

    payload = await read_json_body(request, Platform.WHATSAPP)
    try:
        receipt = pipeline.ingest_reply(instance_name, payload)
    except (WorkPoolSaturated, WorkPoolClosed) as exc:
        raise _busy(exc) from exc
    return _receipt(receipt)


@router.post("/platforms/{platform}/{user_id}")
async def platform_webhook(
    platform: str,
    user_id: str,
    request: Request,
    pipeline: AutomationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """Platform-wide endpoint: the event is routed to the user's automation."""

    try:
        source = Platform.parse(platform)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Unknown platform '{platform}'"
        ) from exc
    payload = await read_json_body(request, source)
    topic = request.headers.get("X-Topic") or request.query_params.get("topic")
    try:
        receipt = pipeline.ingest_for_platform(user_id, source, payload, topic=topic)
    except (WorkPoolSaturated, WorkPoolClosed) as exc:
        raise _busy(exc) from exc
    return _receipt(receipt)


@router.post("/{automation_id}")
async def automation_webhook(
    automation_id: str,
    request: Request,
    pipeline: AutomationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    payload = await read_json_body(request)
    try:
        receipt = pipeline.ingest_for_automation(automation_id, payload)
    except (WorkPoolSaturated, WorkPoolClosed) as exc:
        raise _busy(exc) from exc
    return _receipt(receipt)
