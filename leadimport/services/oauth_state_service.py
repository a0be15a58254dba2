"""Single-use CSRF state tokens for the Google OAuth round trip.

Two stores share one interface:

- :class:`InMemoryStateStore` keeps states in a process-wide dict. Only
  valid when the API runs as a single worker process.
- :class:`DatabaseStateStore` keeps them in the ``oauth_states`` table so
  every worker sees the same states. Consumption is a conditional delete,
  so only one callback can win a given state.
"""

from __future__ import annotations

import datetime as dt
import logging
import secrets
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from leadimport.config import OAUTH_STATE_TTL_MINUTES, settings
from leadimport.db import as_utc, utcnow
from leadimport.models.oauth_state import OAuthState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingAuthorization:
    state: str
    user_id: str
    tenant_id: UUID
    expires_at: dt.datetime


def generate_state() -> str:
    """Generate a cryptographically random CSRF state token."""
    return secrets.token_urlsafe(32)


def new_pending_authorization(
    user_id: str, tenant_id: UUID, now: Optional[dt.datetime] = None
) -> PendingAuthorization:
    now = now or utcnow()
    return PendingAuthorization(
        state=generate_state(),
        user_id=user_id,
        tenant_id=tenant_id,
        expires_at=now + dt.timedelta(minutes=OAUTH_STATE_TTL_MINUTES),
    )


class StateStore(Protocol):
    async def put(self, pending: PendingAuthorization) -> None: ...

    async def consume(self, state: str) -> Optional[PendingAuthorization]: ...


class InMemoryStateStore:
    def __init__(self, clock: Callable[[], dt.datetime] = utcnow) -> None:
        self._clock = clock
        self._states: Dict[str, PendingAuthorization] = {}
        self._lock = threading.Lock()

    def _evict_expired(self, now: dt.datetime) -> None:
        expired = [key for key, pending in self._states.items() if pending.expires_at <= now]
        for key in expired:
            del self._states[key]

    async def put(self, pending: PendingAuthorization) -> None:
        with self._lock:
            self._evict_expired(self._clock())
            self._states[pending.state] = pending

    async def consume(self, state: str) -> Optional[PendingAuthorization]:
        """Remove and return the state if it exists and is unexpired."""
        with self._lock:
            now = self._clock()
            pending = self._states.pop(state, None)
            self._evict_expired(now)
        if pending is None or pending.expires_at <= now:
            return None
        return pending

    def clear(self) -> None:
        """Clear all state entries. Used in tests."""
        with self._lock:
            self._states.clear()

    def __len__(self) -> int:
        return len(self._states)


class DatabaseStateStore:
    def __init__(self, session: AsyncSession, clock: Callable[[], dt.datetime] = utcnow) -> None:
        self.session = session
        self._clock = clock

    async def put(self, pending: PendingAuthorization) -> None:
        await self.session.execute(delete(OAuthState).where(OAuthState.expires_at <= self._clock()))
        self.session.add(
            OAuthState(
                state=pending.state,
                user_id=pending.user_id,
                tenant_id=pending.tenant_id,
                expires_at=pending.expires_at,
            )
        )
        await self.session.commit()

    async def consume(self, state: str) -> Optional[PendingAuthorization]:
        result = await self.session.execute(select(OAuthState).where(OAuthState.state == state))
        row = result.scalar_one_or_none()
        if row is None:
            return None

        pending = PendingAuthorization(
            state=row.state,
            user_id=row.user_id,
            tenant_id=row.tenant_id,
            expires_at=as_utc(row.expires_at),
        )
        # Whoever deletes the row owns the state
        deleted = await self.session.execute(
            delete(OAuthState)
            .where(OAuthState.state == state)
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        if deleted.rowcount != 1:
            logger.warning("OAuth state consumed concurrently by another callback")
            return None
        if pending.expires_at <= self._clock():
            return None
        return pending


# Process-wide store used when OAUTH_STATE_BACKEND=memory
memory_state_store = InMemoryStateStore()


def create_state_store(session: AsyncSession) -> StateStore:
    if settings.oauth_state_backend == "database":
        return DatabaseStateStore(session)
    return memory_state_store
