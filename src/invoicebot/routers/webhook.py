"""
Meta webhook router for the invoice bot.

This module implements the GET endpoint for the webhook verification
handshake and the POST endpoint that receives WhatsApp and Messenger
messages. The POST body is authenticated with the x-hub-signature-256
HMAC before it is parsed; verified payloads are handed to the
WebhookDispatcher in a background task so Meta gets its acknowledgment
immediately.
"""

import json
from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from slowapi import Limiter
from slowapi.util import get_remote_address

from ..config import settings
from ..db import get_session_factory
from ..exceptions import SignatureVerificationError
from ..schemas import WebhookPayload
from ..services.dispatcher import WebhookDispatcher
from ..services.messaging import verify_meta_signature
from ..utils.logging import get_logger

# Set up logger
logger = get_logger(__name__)

# Create router
router = APIRouter()

# Initialize rate limiter (uses client IP address as key)
limiter = Limiter(key_func=get_remote_address)

_dispatcher: Optional[WebhookDispatcher] = None


def get_dispatcher() -> WebhookDispatcher:
    """
    Dependency returning the process-wide dispatcher.

    Tests override this with a dispatcher bound to their own database.
    """
    global _dispatcher

    if _dispatcher is None:
        _dispatcher = WebhookDispatcher(get_session_factory())
    return _dispatcher


def require_valid_signature(signature: Optional[str], body: bytes) -> None:
    """
    Check the webhook signature against the raw body.

    Raises:
        SignatureVerificationError: If the header is absent, malformed or
            does not match.
    """
    if not verify_meta_signature(signature, body):
        raise SignatureVerificationError("Invalid x-hub-signature-256")


async def run_dispatch(dispatcher: WebhookDispatcher, payload: dict[str, Any]) -> None:
    """Background task body; errors are logged, never raised."""
    try:
        processed = await dispatcher.dispatch(payload)
        logger.info("Webhook dispatched", extra={"message_count": processed})
    except Exception as e:
        logger.error(
            "Webhook dispatch failed",
            extra={"error_type": type(e).__name__, "error": str(e)},
            exc_info=True,
        )


@router.get("/webhook")
@limiter.limit("30/minute")
async def verify_webhook(
    request: Request,
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
) -> Response:
    """
    Webhook verification handshake (GET).

    Meta calls this with ``hub.mode=subscribe`` when the webhook URL is
    registered. The challenge is echoed back as plain text when the verify
    token matches; anything else is a 403.
    """
    logger.info(
        "Webhook verification attempt",
        extra={"hub_mode": hub_mode, "has_token": bool(hub_verify_token)},
    )

    if (
        hub_mode != "subscribe"
        or not settings.whatsapp_verify_token
        or hub_verify_token != settings.whatsapp_verify_token
    ):
        logger.warning("Webhook verification failed", extra={"hub_mode": hub_mode})
        return Response(content="Forbidden", status_code=status.HTTP_403_FORBIDDEN, media_type="text/plain")

    logger.info("Webhook verification successful")
    return Response(content=hub_challenge or "", media_type="text/plain")


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
) -> Any:
    """
    Webhook receiver (POST).

    Returns 403 when the signature check fails. Once the signature is valid
    the answer is always ``{"success": true}``, whatever happens while the
    messages are processed.
    """
    body = await request.body()

    try:
        require_valid_signature(request.headers.get("x-hub-signature-256"), body)
    except SignatureVerificationError:
        logger.warning("Webhook signature rejected", extra={"body_length": len(body)})
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"error": "Invalid signature"})

    try:
        payload = WebhookPayload.model_validate(json.loads(body))
    except (ValueError, ValidationError) as e:
        logger.warning("Webhook body is not valid JSON", extra={"error": str(e)})
        return {"success": True}

    logger.info(
        "Webhook received",
        extra={"object_type": payload.object, "entry_count": len(payload.entry or [])},
    )
    background_tasks.add_task(run_dispatch, dispatcher, payload.model_dump())
    return {"success": True}
