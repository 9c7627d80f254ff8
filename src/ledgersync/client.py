# ABOUTME: Process-wide store sessions shared by every RestLedgerStore
# ABOUTME: One signed-in session per store URL, dropped and rebuilt after auth failures

import asyncio
import logging

from ledgersync.auth import StoreSession
from ledgersync.config import Settings

logger = logging.getLogger(__name__)

# Credits and deposits ledgers talk to the same store; they share its session
_sessions: dict[str, StoreSession] = {}
_sessions_lock = asyncio.Lock()


def _key(settings: Settings) -> str:
    return f"{settings.api_url}|{settings.email or ''}"


async def get_session(settings: Settings | None = None) -> StoreSession:
    """Signed-in session for the configured store, created on first use."""
    settings = settings or Settings.from_env()
    key = _key(settings)

    async with _sessions_lock:
        session = _sessions.get(key)
        if session is None:
            logger.info(f"Opening store session for {settings.api_url or 'unconfigured store'}")
            session = StoreSession(settings)
            await session.ensure_authenticated()
            _sessions[key] = session
        return session


async def invalidate_session(settings: Settings | None = None) -> None:
    """
    Forget a store session so the next get_session() signs in again.

    Without settings every shared session is dropped.
    """
    async with _sessions_lock:
        if settings is None:
            dropped = list(_sessions.values())
            _sessions.clear()
        else:
            session = _sessions.pop(_key(settings), None)
            dropped = [session] if session else []
        for session in dropped:
            await session.reset()
    logger.info(f"Dropped {len(dropped)} store session(s)")
