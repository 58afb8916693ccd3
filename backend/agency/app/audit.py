"""Audit trail for authentication and account administration events."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.agency.db.models import AuditEvent

from .logging import get_logger


logger = get_logger("agency.audit")


def client_ip(request: Request | None) -> str | None:
    """Best effort client address, honouring the first ``X-Forwarded-For`` hop."""

    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",", 1)[0].strip()
        if candidate:
            return candidate
    client = request.client
    if client and client.host:
        return client.host
    return None


async def record_audit_event(
    session: AsyncSession,
    *,
    action: str,
    result: str,
    request: Request | None = None,
    actor_user_id: int | None = None,
    target_user_id: int | None = None,
    metadata: Mapping[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> AuditEvent:
    """Add an :class:`AuditEvent` to ``session`` and flush it.

    The caller owns the transaction; the event is committed together with the
    change it describes.
    """

    event = AuditEvent(
        action=action,
        result=result,
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent") if request is not None else None,
        occurred_at=occurred_at or datetime.now(timezone.utc),
        metadata_json=dict(metadata or {}),
    )
    session.add(event)
    await session.flush()
    logger.info(
        "audit.recorded",
        action=action,
        result=result,
        actor_user_id=actor_user_id,
        target_user_id=target_user_id,
    )
    return event


__all__ = ["client_ip", "record_audit_event"]
