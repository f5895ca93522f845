from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, Request

from iprof.auth.deps import service_client
from iprof.billing.config import load_billing_config
from iprof.billing.webhook import InvalidWebhook, WebhookNotConfigured, apply_event, verify_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/billing/webhook")
async def billing_webhook(request: Request) -> Dict[str, Any]:
    """
    Payment-processor webhook.

    The signature is checked against the raw body; subscription changes are
    written with the service client.
    """
    payload = await request.body()
    cfg = load_billing_config()
    try:
        event = verify_event(payload, request.headers.get("stripe-signature"), cfg.webhook_secret)
    except WebhookNotConfigured as e:
        logger.error("Webhook rejected: %s", str(e))
        raise HTTPException(status_code=500, detail="Webhook not configured")
    except InvalidWebhook as e:
        logger.warning("Webhook rejected: %s", str(e))
        raise HTTPException(status_code=400, detail=str(e))

    try:
        outcome = await _apply(event)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Webhook handler failed for %s: %s", event.get("type"), str(e))
        raise HTTPException(status_code=500, detail="Webhook handler failed")
    return {"received": True, "outcome": outcome}


async def _apply(event: Dict[str, Any]) -> str:
    from starlette.concurrency import run_in_threadpool

    return await run_in_threadpool(lambda: apply_event(service_client(), event))
