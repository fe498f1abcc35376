"""Request-level helpers shared by the provider webhook routers."""

from __future__ import annotations

import hmac
import json
import logging
from typing import Any

import httpx
from fastapi import HTTPException, Request, status
from fastapi.responses import PlainTextResponse

from channelhub.adapters.base import ChannelAdapter
from channelhub.core.domain import ChannelType
from channelhub.security.webhooks import extract_signature, log_webhook_verification

from .dispatch import WebhookDispatcher

logger = logging.getLogger(__name__)


def subscription_challenge(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str | None,
    *,
    platform: str,
) -> PlainTextResponse:
    """Answer the provider's ``hub.challenge`` subscription handshake."""

    if (
        mode == "subscribe"
        and expected_token
        and token
        and challenge is not None
        and hmac.compare_digest(token, expected_token)
    ):
        logger.info("webhook subscription verified", extra={"platform": platform})
        return PlainTextResponse(challenge)
    logger.warning(
        "webhook subscription handshake rejected",
        extra={"platform": platform, "mode": mode, "has_token": bool(token)},
    )
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verification failed")


async def read_verified_json(
    request: Request, adapter: ChannelAdapter, secret: str | None, *, platform: str
) -> Any:
    """Check the signature over the raw body, then decode it."""

    raw_body = await request.body()
    signature = extract_signature(request.headers)
    valid = adapter.verify_webhook(raw_body, signature, secret)
    log_webhook_verification(platform, valid, signature, len(raw_body))
    if not valid:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid signature")

    try:
        return json.loads(raw_body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="invalid JSON payload"
        ) from exc


async def dispatch_payload(
    dispatcher: WebhookDispatcher, channel_type: ChannelType, payload: Any
) -> dict[str, Any]:
    try:
        events = await dispatcher.dispatch(channel_type, payload)
    except httpx.HTTPError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY, detail="inbox unavailable"
        ) from exc
    if not events:
        return {"status": "ignored"}
    return {"status": "accepted", "messages": len(events)}
