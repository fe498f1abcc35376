"""Domain data structures shared across adapters, stores and workers."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ChannelType(str, Enum):
    """Supported messaging channels."""

    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    WHATSAPP = "whatsapp"
    TIKTOK = "tiktok"
    MOCK = "mock"

    @classmethod
    def parse(cls, value: str | ChannelType) -> ChannelType:
        """Accept both enum members and case-insensitive names."""

        if isinstance(value, ChannelType):
            return value
        return cls(str(value).strip().lower())

    @property
    def is_meta(self) -> bool:
        return self in (ChannelType.INSTAGRAM, ChannelType.FACEBOOK)


class ChannelStatus(str, Enum):
    """Overall channel health as shown to operators."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ERROR = "ERROR"


class AttachmentType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"


@dataclass(slots=True)
class Attachment:
    """Media item attached to a canonical message."""

    type: AttachmentType
    url: str
    mime_type: str | None = None
    filename: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        return {key: value for key, value in payload.items() if value is not None}


@dataclass(slots=True)
class MessageDTO:
    """Canonical inbound message produced from any provider webhook."""

    external_id: str
    body: str
    sent_at: datetime
    sender_handle: str
    thread_external_id: str
    attachments: list[Attachment] = field(default_factory=list)
    sender_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "external_id": self.external_id,
            "body": self.body,
            "sent_at": self.sent_at.isoformat(),
            "sender_handle": self.sender_handle,
            "sender_name": self.sender_name,
            "thread_external_id": self.thread_external_id,
            "attachments": [attachment.to_dict() for attachment in self.attachments],
        }


@dataclass(slots=True)
class SendMessageDTO:
    """Outbound message requested by the inbox."""

    thread_external_id: str
    body: str
    attachments: Sequence[Attachment] = field(default_factory=list)


@dataclass(slots=True)
class ThreadDTO:
    """Conversation summary returned by providers that can enumerate threads."""

    external_id: str
    participant_handle: str
    last_message_at: datetime
    participant_name: str | None = None


@dataclass(slots=True)
class ValidationResult:
    """Outcome of a credential validation call."""

    valid: bool
    error: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class AdapterResult(Generic[T]):
    """Value-or-error wrapper returned at every adapter boundary."""

    success: bool
    data: T | None = None
    error: Any | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> AdapterResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: Any, data: T | None = None) -> AdapterResult[T]:
        return cls(success=False, data=data, error=error)


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


def from_timestamp(value: Any, *, milliseconds: bool = False) -> datetime:
    """Parse provider epoch timestamps, falling back to now for junk input."""

    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return utcnow()
    if milliseconds:
        seconds /= 1000
    try:
        return datetime.fromtimestamp(seconds, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return utcnow()
