"""Platform adapters presenting one contract over every messaging provider."""

from .base import ChannelAdapter, HttpChannelAdapter
from .errors import AdapterError, ErrorType, classify, classify_meta_error, classify_status
from .media import MediaMapper
from .meta import FacebookAdapter, InstagramAdapter
from .mock import MockAdapter
from .registry import AdapterRegistry, build_adapter_registry
from .tiktok import TikTokAdapter
from .whatsapp import WhatsAppAdapter

__all__ = [
    "ChannelAdapter",
    "HttpChannelAdapter",
    "AdapterError",
    "ErrorType",
    "classify",
    "classify_meta_error",
    "classify_status",
    "MediaMapper",
    "InstagramAdapter",
    "FacebookAdapter",
    "WhatsAppAdapter",
    "TikTokAdapter",
    "MockAdapter",
    "AdapterRegistry",
    "build_adapter_registry",
]
