"""Stripe webhook endpoint.

Status codes are chosen so Stripe only retries what a retry can fix:

- 400 missing Stripe-Signature header, unparseable body, no event id/type
- 401 signature mismatch or timestamp outside tolerance
- 500 STRIPE_WEBHOOK_SECRET unset, or processing failed after verification
  (both carry Retry-After)

A verified event is processed at most once (see ``billing.webhook_dedup``).
"""

import json
import logging
import os
from typing import Optional

import redis
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from paymatch_api.billing.stripe_client import StripeSignatureError, verify_webhook_signature
from paymatch_api.billing.webhook_dedup import (
    STRIPE_PROVIDER,
    get_stripe_dedup_key,
    mark_dedup_done,
    mark_dedup_failed,
    try_acquire_dedup,
)
from paymatch_api.billing.webhooks import process_stripe_event
from paymatch_api.context import request_id_var
from paymatch_api.db.redis_client import get_redis
from paymatch_api.db.session import get_db
from paymatch_api.utils.sanitize import payload_hash_bytes, redact_text

router = APIRouter(prefix="/api/stripe", tags=["webhooks"])
logger = logging.getLogger(__name__)

# error code -> (status, title)
_REJECTIONS: dict[str, tuple[int, str]] = {
    "WEBHOOK_MISSING_HEADERS": (400, "Missing required webhook headers"),
    "WEBHOOK_INVALID_JSON": (400, "Invalid JSON payload"),
    "WEBHOOK_INVALID_PAYLOAD": (400, "Invalid webhook payload"),
    "WEBHOOK_SIGNATURE_INVALID": (401, "Webhook signature verification failed"),
    "WEBHOOK_PROVIDER_MISCONFIG": (500, "Webhook provider misconfiguration"),
    "WEBHOOK_INTERNAL_ERROR": (500, "Internal processing error"),
}


class WebhookRejected(Exception):
    def __init__(self, code: str, detail: str, **log_fields):
        super().__init__(detail)
        self.code = code
        self.detail = detail
        self.log_fields = log_fields


def _rejection_response(rejection: WebhookRejected, payload_hash: str) -> JSONResponse:
    status_code, title = _REJECTIONS[rejection.code]
    request_id = request_id_var.get(None)

    log = logger.error if status_code >= 500 else logger.warning
    log(
        rejection.code,
        extra={
            "provider": STRIPE_PROVIDER,
            "error_code": rejection.code,
            "payload_hash": payload_hash,
            **rejection.log_fields,
        },
    )

    headers = {"Content-Type": "application/problem+json"}
    if status_code >= 500:
        headers["Retry-After"] = "60"

    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "type": f"urn:paymatch:webhook:{rejection.code.lower()}",
            "title": title,
            "status": status_code,
            "detail": rejection.detail,
            "provider": STRIPE_PROVIDER,
            "error_code": rejection.code,
            "payload_hash": payload_hash,
            "instance": f"urn:paymatch:trace:{request_id}" if request_id else "/api/stripe/webhook",
        },
    )


def _verified_event(raw_body: bytes, signature_header: Optional[str]) -> dict:
    """Check the signature, then decode the body into a Stripe event dict."""
    if not signature_header:
        raise WebhookRejected("WEBHOOK_MISSING_HEADERS", "Stripe-Signature header is absent")

    secret = os.getenv("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise WebhookRejected(
            "WEBHOOK_PROVIDER_MISCONFIG", "Webhook verification is not properly configured"
        )

    try:
        verify_webhook_signature(raw_body, signature_header, secret)
    except StripeSignatureError as exc:
        raise WebhookRejected("WEBHOOK_SIGNATURE_INVALID", str(exc)) from exc

    try:
        event = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise WebhookRejected("WEBHOOK_INVALID_JSON", "Request body is not valid JSON") from exc

    if not isinstance(event, dict) or not event.get("type"):
        raise WebhookRejected("WEBHOOK_INVALID_PAYLOAD", "Missing required fields: id, type")
    return event


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    raw_body = await request.body()
    payload_hash = payload_hash_bytes(raw_body)

    try:
        event = _verified_event(raw_body, stripe_signature)
        try:
            dedup_key = get_stripe_dedup_key(event)
        except ValueError as exc:
            raise WebhookRejected("WEBHOOK_INVALID_PAYLOAD", redact_text(str(exc))) from exc
    except WebhookRejected as rejection:
        return _rejection_response(rejection, payload_hash)

    event_type = event["type"]
    logger.info(
        "Stripe event received",
        extra={"provider": STRIPE_PROVIDER, "event_type": event_type, "dedup_key": dedup_key},
    )

    if not try_acquire_dedup(db, STRIPE_PROVIDER, dedup_key, payload_hash):
        logger.info("Stripe event already handled", extra={"dedup_key": dedup_key})
        return {"status": "already_processed"}

    try:
        handled = await process_stripe_event(db, event, redis_client=redis_client)
    except Exception as exc:
        db.rollback()
        mark_dedup_failed(db, STRIPE_PROVIDER, dedup_key)
        rejection = WebhookRejected(
            "WEBHOOK_INTERNAL_ERROR",
            "An internal error occurred while processing the webhook",
            event_type=event_type,
            error_type=type(exc).__name__,
            error_msg=redact_text(str(exc)),
        )
        return _rejection_response(rejection, payload_hash)

    mark_dedup_done(db, STRIPE_PROVIDER, dedup_key)
    return {"status": "processed" if handled else "ignored"}
