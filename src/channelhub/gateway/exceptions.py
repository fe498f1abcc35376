"""Exception hierarchy for the webhook gateway."""

from __future__ import annotations


class ChannelGatewayError(Exception):
    """Base exception for webhook gateway failures."""


class SignatureVerificationError(ChannelGatewayError):
    """Raised when a webhook signature cannot be validated."""


class UnsupportedChannelError(ChannelGatewayError):
    """Raised when a webhook targets a channel type without an adapter."""
