"""Checkout OTP routes called by the storefront script."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from ..automations.errors import StoreUnavailable
from ..automations.models import Platform
from ..ingestion.pipeline import AutomationPipeline, get_pipeline
from ..ingestion.runner import WorkPoolClosed, WorkPoolSaturated
from .webhooks import _busy, _receipt, read_json_body

router = APIRouter(prefix="/api/otp/lightfunnels", tags=["otp"])


@router.post("/{automation_id}/request")
async def request_otp(
    automation_id: str,
    request: Request,
    pipeline: AutomationPipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    payload = await read_json_body(request, Platform.LIGHTFUNNELS)
    try:
        receipt = pipeline.ingest_otp_request(automation_id, payload)
    except (WorkPoolSaturated, WorkPoolClosed) as exc:
        raise _busy(exc) from exc
    return _receipt(receipt)


@router.post("/{automation_id}/verify")
async def verify_otp(
    automation_id: str,
    request: Request,
    pipeline: AutomationPipeline = Depends(get_pipeline),
) -> dict[str, bool]:
    """Answer ``{"verified": true}`` only for the latest live code of the phone."""

    payload = await read_json_body(request, Platform.LIGHTFUNNELS)
    if not isinstance(payload, Mapping):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    try:
        verified = await run_in_threadpool(pipeline.verify_otp, automation_id, payload)
    except StoreUnavailable as exc:
        raise _busy(exc) from exc
    return {"verified": verified}
