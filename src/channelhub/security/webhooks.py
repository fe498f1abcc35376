"""Signature verification helpers for provider webhooks."""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Mapping
from dataclasses import dataclass

from channelhub.gateway.exceptions import SignatureVerificationError

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-hub-signature-256", "x-tiktok-signature")


@dataclass(slots=True)
class SignatureContext:
    """Contextual information required for signature validation."""

    signature: str
    secret: str
    payload: bytes


def _strip_prefix(signature: str) -> str:
    signature = signature.strip()
    if signature.lower().startswith("sha256="):
        return signature[len("sha256="):]
    return signature


def validate_hmac_signature(context: SignatureContext, *, algorithm: str = "sha256") -> None:
    """Validate a provider webhook request using HMAC over the raw body."""

    if not context.signature:
        raise SignatureVerificationError("missing signature")

    try:
        digestmod = getattr(hashlib, algorithm)
    except AttributeError as exc:  # pragma: no cover - safety guard
        raise SignatureVerificationError(f"unsupported hash algorithm: {algorithm}") from exc

    computed = hmac.new(context.secret.encode("utf-8"), context.payload, digestmod).hexdigest()
    provided = _strip_prefix(context.signature).lower()
    if not hmac.compare_digest(computed, provided):
        raise SignatureVerificationError("signature mismatch")


def verify_signature(
    payload: bytes | str,
    signature: str | None,
    secret: str | None,
    *,
    platform: str,
    allow_unsigned: bool = False,
) -> bool:
    """Boolean wrapper used by adapters.

    A missing secret only passes when ``allow_unsigned`` is set, and always
    produces a warning because it disables a security control.
    """

    raw = payload.encode("utf-8") if isinstance(payload, str) else payload

    if not secret:
        if allow_unsigned:
            logger.warning(
                "webhook secret not configured; signature verification skipped",
                extra={"platform": platform, "payload_length": len(raw)},
            )
            return True
        logger.error(
            "webhook secret not configured; rejecting unsigned delivery",
            extra={"platform": platform},
        )
        return False

    try:
        validate_hmac_signature(
            SignatureContext(signature=signature or "", secret=secret, payload=raw)
        )
    except SignatureVerificationError as exc:
        logger.error(
            "webhook verification failed",
            extra={
                "platform": platform,
                "reason": str(exc),
                "has_signature": bool(signature),
                "payload_length": len(raw),
            },
        )
        return False
    return True


def extract_signature(headers: Mapping[str, str]) -> str | None:
    """Return the first provider signature header present."""

    lowered = {key.lower(): value for key, value in headers.items()}
    for name in SIGNATURE_HEADERS:
        value = lowered.get(name)
        if value:
            return value
    return None


def log_webhook_verification(
    platform: str, valid: bool, signature: str | None, payload_length: int
) -> None:
    extra = {
        "platform": platform,
        "valid": valid,
        "has_signature": bool(signature),
        "payload_length": payload_length,
    }
    if valid:
        logger.info("webhook signature verified", extra=extra)
    else:
        logger.warning("webhook signature rejected", extra=extra)
