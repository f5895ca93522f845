"""
Payment-processor (Stripe) webhook handling.

The raw request body is verified against the `Stripe-Signature` header before any
event is trusted; subscription rows in the hosted database are then brought in
line with the event.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import stripe
from supabase import Client

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class WebhookNotConfigured(RuntimeError):
    pass


class InvalidWebhook(ValueError):
    pass


def verify_event(payload: bytes, sig_header: Optional[str], secret: Optional[str]) -> Dict[str, Any]:
    """Verify the signature header and return the decoded event."""
    if not secret:
        raise WebhookNotConfigured("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise InvalidWebhook("Missing Stripe-Signature header")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidWebhook("Webhook body is not UTF-8")
    try:
        stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance=SIGNATURE_TOLERANCE_SECONDS)
    except stripe.SignatureVerificationError as e:
        raise InvalidWebhook(f"Invalid signature: {e}")
    try:
        event = json.loads(body)
    except ValueError:
        raise InvalidWebhook("Invalid JSON payload")
    if not isinstance(event, dict) or not event.get("type"):
        raise InvalidWebhook("Malformed event")
    return event


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _from_epoch(value: Any) -> Optional[str]:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    return _iso(datetime.fromtimestamp(value, tz=timezone.utc))


def _subscription_owner(client: Client, customer_id: Optional[str]) -> Optional[str]:
    if not customer_id:
        return None
    resp = (
        client.table("subscriptions")
        .select("user_id")
        .eq("stripe_customer_id", customer_id)
        .limit(1)
        .execute()
    )
    rows = getattr(resp, "data", None) or []
    return str(rows[0]["user_id"]) if rows and rows[0].get("user_id") else None


def _on_checkout_completed(client: Client, obj: Dict[str, Any], now: datetime) -> str:
    metadata = obj.get("metadata") or {}
    user_id = metadata.get("user_id")
    plan = metadata.get("plan")
    billing_cycle = metadata.get("billing_cycle")
    if not user_id or not plan:
        return "ignored_missing_metadata"

    period_days = 365 if billing_cycle == "annual" else 30
    client.table("subscriptions").upsert(
        {
            "user_id": user_id,
            "plan": plan,
            "billing_cycle": billing_cycle,
            "status": "active",
            "stripe_customer_id": obj.get("customer"),
            "stripe_subscription_id": obj.get("subscription"),
            "current_period_start": _iso(now),
            "current_period_end": _iso(now + timedelta(days=period_days)),
            "updated_at": _iso(now),
        },
        on_conflict="user_id",
    ).execute()
    return "subscription_activated"


def _on_subscription_updated(client: Client, obj: Dict[str, Any], now: datetime) -> str:
    user_id = _subscription_owner(client, obj.get("customer"))
    if not user_id:
        return "ignored_unknown_customer"

    items = ((obj.get("items") or {}).get("data")) or []
    first = items[0] if items and isinstance(items[0], dict) else {}
    # Newer API versions carry the period on the item; older ones on the subscription.
    period_start = first.get("current_period_start", obj.get("current_period_start"))
    period_end = first.get("current_period_end", obj.get("current_period_end"))

    client.table("subscriptions").update(
        {
            "status": obj.get("status"),
            "current_period_start": _from_epoch(period_start),
            "current_period_end": _from_epoch(period_end),
            "updated_at": _iso(now),
        }
    ).eq("user_id", user_id).execute()
    return "subscription_updated"


def _on_subscription_deleted(client: Client, obj: Dict[str, Any], now: datetime) -> str:
    user_id = _subscription_owner(client, obj.get("customer"))
    if not user_id:
        return "ignored_unknown_customer"
    client.table("subscriptions").update(
        {
            "plan": "free",
            "status": "canceled",
            "stripe_subscription_id": None,
            "updated_at": _iso(now),
        }
    ).eq("user_id", user_id).execute()
    return "subscription_canceled"


_HANDLERS = {
    CHECKOUT_COMPLETED: _on_checkout_completed,
    SUBSCRIPTION_UPDATED: _on_subscription_updated,
    SUBSCRIPTION_DELETED: _on_subscription_deleted,
}


def apply_event(client: Client, event: Dict[str, Any], *, now: Optional[datetime] = None) -> str:
    """Apply a verified event to the subscriptions table. Returns a short outcome label."""
    event_type = str(event.get("type") or "")
    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.debug("Ignoring webhook event type %s", event_type)
        return "ignored_event_type"
    obj = ((event.get("data") or {}).get("object")) or {}
    outcome = handler(client, obj, now or datetime.now(timezone.utc))
    logger.info("Webhook %s (%s): %s", event_type, event.get("id"), outcome)
    return outcome
