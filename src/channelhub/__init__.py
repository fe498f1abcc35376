"""Channel adapters and credential lifecycle for the multi-tenant messaging hub."""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
