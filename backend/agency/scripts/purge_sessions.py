#!/usr/bin/env python3
"""Delete expired refresh sessions and spent password reset tokens."""

from __future__ import annotations

import argparse
import asyncio

from sqlalchemy.ext.asyncio import AsyncSession

from backend.agency.app.clock import Clock, SystemClock
from backend.agency.app.config import settings
from backend.agency.app.dependencies import build_token_service
from backend.agency.app.logging import get_logger
from backend.agency.app.reset_tokens import ResetTokenService
from backend.agency.db.base import create_all, create_engine, create_session, dispose_engine


logger = get_logger("agency.scripts.purge_sessions")


async def purge_expired_records(session: AsyncSession, *, clock: Clock | None = None) -> dict[str, int]:
    """Run one purge pass in a single transaction and report what was removed."""

    clock = clock or SystemClock()
    tokens = build_token_service(settings.auth, clock)
    reset_tokens = ResetTokenService(
        session,
        ttl_seconds=settings.auth.password_reset_token_ttl_seconds,
        clock=clock,
    )
    removed = {
        "refreshSessions": await tokens.purge_expired(session),
        "resetTokens": await reset_tokens.purge_expired(),
    }
    await session.commit()
    return removed


async def _purge(*, database_url: str, interval: int | None) -> None:
    create_engine(database_url, echo=False)
    await create_all()
    try:
        while True:
            session = create_session()
            try:
                removed = await purge_expired_records(session)
            finally:
                await session.close()
            logger.info("purge.completed", **removed)
            if interval is None:
                break
            await asyncio.sleep(interval)
    finally:
        await dispose_engine()


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Purge expired credentials from the agency database")
    parser.add_argument(
        "--database-url",
        default=settings.database_url,
        help="Database URL to connect to (defaults to configured application URL).",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Repeat every N seconds instead of running once (e.g. 3600 for hourly).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    if args.interval is not None and args.interval < 1:
        raise SystemExit("--interval must be a positive number of seconds")
    asyncio.run(_purge(database_url=args.database_url, interval=args.interval))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
