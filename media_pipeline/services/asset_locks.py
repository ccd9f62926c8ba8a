from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

logger = logging.getLogger(__name__)

_locks: dict[str, asyncio.Lock] = {}
_holders: dict[str, int] = {}


def _key(asset_id: UUID | str) -> str:
    return str(asset_id)


def is_locked(asset_id: UUID | str) -> bool:
    lock = _locks.get(_key(asset_id))
    return bool(lock and lock.locked())


@asynccontextmanager
async def asset_lock(asset_id: UUID | str) -> AsyncIterator[None]:
    """Serialize read-modify-write of one asset's `meta` within this process.

    Locks are created on first use and dropped once nobody holds or waits for them.
    """
    key = _key(asset_id)
    lock = _locks.setdefault(key, asyncio.Lock())
    _holders[key] = _holders.get(key, 0) + 1
    try:
        if lock.locked():
            logger.debug("media_asset_lock_wait", extra={"asset_id": key})
        async with lock:
            yield
    finally:
        remaining = _holders.get(key, 1) - 1
        if remaining <= 0:
            _holders.pop(key, None)
            _locks.pop(key, None)
        else:
            _holders[key] = remaining
