"""Durable keyed store with TTL eviction.

Backs two things: per-target leases (single-writer run tokens) and
cached reputation lookups. Entries live in the database so they survive
restarts; expired entries are ignored on read and purged on each
scheduler tick.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from riskwatch.config import get_settings
from riskwatch.errors import ConcurrentWriteConflict
from riskwatch.models.database import KeyedEntry, get_session_factory, utcnow

logger = logging.getLogger("riskwatch.store")


# ─── KEY / VALUE ─────────────────────────────────────────────────────────────

async def put(key: str, value: Any, ttl_seconds: float) -> None:
    """Insert or replace a value that expires after ``ttl_seconds``."""
    session_factory = get_session_factory()
    expires_at = utcnow() + timedelta(seconds=ttl_seconds)
    async with session_factory() as session:
        async with session.begin():
            await session.execute(delete(KeyedEntry).where(KeyedEntry.key == key))
            session.add(KeyedEntry(key=key, value=value, expires_at=expires_at))


async def get(key: str, now: Optional[datetime] = None) -> Optional[Any]:
    """Return the stored value, or None when missing or expired."""
    session_factory = get_session_factory()
    now = now or utcnow()
    async with session_factory() as session:
        result = await session.execute(
            select(KeyedEntry).where(KeyedEntry.key == key, KeyedEntry.expires_at > now)
        )
        entry = result.scalar_one_or_none()
        return entry.value if entry else None


async def purge_expired(now: Optional[datetime] = None) -> int:
    """Delete every expired entry. Returns the number removed."""
    session_factory = get_session_factory()
    now = now or utcnow()
    async with session_factory() as session:
        async with session.begin():
            result = await session.execute(
                delete(KeyedEntry).where(KeyedEntry.expires_at <= now)
            )
    return result.rowcount or 0


# ─── LEASES ──────────────────────────────────────────────────────────────────

def lease_key(resource: str) -> str:
    return f"lease:{resource}"


async def _try_claim(key: str, token: str, ttl_seconds: float) -> bool:
    session_factory = get_session_factory()
    now = utcnow()
    async with session_factory() as session:
        try:
            async with session.begin():
                # An expired lease belongs to nobody
                await session.execute(
                    delete(KeyedEntry).where(KeyedEntry.key == key, KeyedEntry.expires_at <= now)
                )
                session.add(KeyedEntry(
                    key=key,
                    token=token,
                    expires_at=now + timedelta(seconds=ttl_seconds),
                ))
        except IntegrityError:
            return False
    return True


async def acquire_lease(resource: str, ttl_seconds: Optional[float] = None) -> str:
    """Claim exclusive ownership of ``resource`` and return the run token.

    A held lease gets one retry after ``lease_retry_delay_seconds``; if it
    is still held the caller gets ConcurrentWriteConflict.
    """
    settings = get_settings()
    ttl = ttl_seconds if ttl_seconds is not None else settings.lease_ttl_seconds
    key = lease_key(resource)
    token = uuid.uuid4().hex

    for attempt in range(2):
        if await _try_claim(key, token, ttl):
            logger.debug(f"Lease {key} acquired ({token[:8]})")
            return token
        if attempt == 0:
            await asyncio.sleep(settings.lease_retry_delay_seconds)

    logger.warning(f"Lease {key} is held by another run")
    raise ConcurrentWriteConflict(resource)


async def release_lease(resource: str, token: str) -> bool:
    """Release a lease. Only the holder's token can release it."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        async with session.begin():
            result = await session.execute(
                delete(KeyedEntry).where(
                    KeyedEntry.key == lease_key(resource),
                    KeyedEntry.token == token,
                )
            )
    released = bool(result.rowcount)
    if not released:
        logger.warning(f"Lease {lease_key(resource)} was not held by {token[:8]} on release")
    return released
