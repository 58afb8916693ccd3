"""Session and access-control service for the consulting agency backend."""

from __future__ import annotations

__all__: list[str] = []
