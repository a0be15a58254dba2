from __future__ import annotations

import asyncio
import datetime as dt
import logging
import weakref
from typing import Any, Callable, Dict, Optional, Tuple
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from leadimport.config import GRANTED_SCOPES, TOKEN_REFRESH_BUFFER_MINUTES, settings
from leadimport.db import as_utc, utcnow
from leadimport.errors import ExchangeFailedError, InvalidStateError
from leadimport.models.spreadsheet_connection import SpreadsheetConnection
from leadimport.services.google_sheets_service import (
    GoogleApiError,
    SpreadsheetProvider,
    TokenResponse,
)
from leadimport.services.oauth_state_service import StateStore, new_pending_authorization

logger = logging.getLogger(__name__)

# One lock per (user, tenant) so concurrent callers refresh a token once.
_refresh_locks: "weakref.WeakValueDictionary[Tuple[str, UUID], asyncio.Lock]" = (
    weakref.WeakValueDictionary()
)


def _refresh_lock(user_id: str, tenant_id: UUID) -> asyncio.Lock:
    key = (user_id, tenant_id)
    lock = _refresh_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _refresh_locks[key] = lock
    return lock


class GoogleConnectionService:
    """Google account connections: OAuth handshake and access-token lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        provider: SpreadsheetProvider,
        state_store: StateStore,
        redirect_uri: Optional[str] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self.session = session
        self.provider = provider
        self.state_store = state_store
        self.redirect_uri = redirect_uri or settings.google_redirect_uri
        self._clock = clock

    async def get_connection(self, user_id: str, tenant_id: UUID) -> Optional[SpreadsheetConnection]:
        stmt = select(SpreadsheetConnection).where(
            SpreadsheetConnection.user_id == user_id,
            SpreadsheetConnection.tenant_id == tenant_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_status(self, user_id: str, tenant_id: UUID) -> Dict[str, Any]:
        connection = await self.get_connection(user_id, tenant_id)
        if connection is None:
            return {"is_connected": False, "external_account_email": None, "connected_at": None}
        return {
            "is_connected": True,
            "external_account_email": connection.external_account_email,
            "connected_at": as_utc(connection.created_at),
        }

    # ------------------------------------------------------------------
    # Authorization handshake
    # ------------------------------------------------------------------

    async def begin_authorization(self, user_id: str, tenant_id: UUID) -> str:
        """Store a fresh state token and return the Google consent URL."""
        pending = new_pending_authorization(user_id, tenant_id, now=self._clock())
        await self.state_store.put(pending)
        logger.info(
            f"Generated Google OAuth URL for user {user_id} (state={pending.state[:8]}...)"
        )
        return self.provider.authorization_url(pending.state, self.redirect_uri)

    async def discard_state(self, state: str) -> None:
        """Burn a state token without completing the handshake."""
        await self.state_store.consume(state)

    async def complete_authorization(self, code: str, state: str) -> SpreadsheetConnection:
        pending = await self.state_store.consume(state)
        if pending is None:
            logger.warning("Invalid or expired OAuth state")
            raise InvalidStateError()

        try:
            tokens = await self.provider.exchange_code(code, self.redirect_uri)
        except GoogleApiError as e:
            logger.error(f"Failed to exchange Google OAuth code for user {pending.user_id}: {e}")
            raise ExchangeFailedError() from e

        try:
            connection = await self._upsert_connection(pending.user_id, pending.tenant_id, tokens)
        except IntegrityError:
            # Another callback inserted the same (tenant, user) first
            await self.session.rollback()
            connection = await self._upsert_connection(pending.user_id, pending.tenant_id, tokens)

        logger.info(
            f"Google connection saved for user {pending.user_id}, "
            f"email {connection.external_account_email}"
        )
        return connection

    async def _upsert_connection(
        self, user_id: str, tenant_id: UUID, tokens: TokenResponse
    ) -> SpreadsheetConnection:
        now = self._clock()
        connection = await self.get_connection(user_id, tenant_id)
        if connection is not None:
            connection.external_account_email = tokens.email or connection.external_account_email
            connection.access_token = tokens.access_token
            connection.refresh_token = tokens.refresh_token or connection.refresh_token
            connection.token_expiry = tokens.expires_at(now)
            connection.granted_scopes = GRANTED_SCOPES
            connection.updated_at = now
        else:
            connection = SpreadsheetConnection(
                tenant_id=tenant_id,
                user_id=user_id,
                external_account_email=tokens.email or "unknown",
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or "",
                token_expiry=tokens.expires_at(now),
                granted_scopes=GRANTED_SCOPES,
                created_at=now,
                updated_at=now,
            )
            self.session.add(connection)
        await self.session.commit()
        return connection

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    def _needs_refresh(self, connection: SpreadsheetConnection) -> bool:
        buffer = dt.timedelta(minutes=TOKEN_REFRESH_BUFFER_MINUTES)
        return as_utc(connection.token_expiry) <= self._clock() + buffer

    async def get_valid_access_token(self, user_id: str, tenant_id: UUID) -> Optional[str]:
        """Return a non-expired access token; refresh automatically if needed.

        ``None`` means the caller has no usable connection and should
        reconnect. Refresh failures are logged, not raised.
        """
        connection = await self.get_connection(user_id, tenant_id)
        if connection is None:
            return None

        # If token is still valid (>5 min buffer) return it
        if not self._needs_refresh(connection):
            return connection.access_token

        async with _refresh_lock(user_id, tenant_id):
            # Another caller may have refreshed while we waited
            await self.session.refresh(connection)
            if not self._needs_refresh(connection):
                return connection.access_token
            return await self._refresh(connection)

    async def _refresh(self, connection: SpreadsheetConnection) -> Optional[str]:
        previous_expiry = connection.token_expiry
        try:
            tokens = await self.provider.refresh_access_token(connection.refresh_token)
        except GoogleApiError as e:
            logger.error(f"Failed to refresh Google token for user {connection.user_id}: {e}")
            return None

        now = self._clock()
        # Only the writer that still sees the old expiry wins
        stmt = (
            update(SpreadsheetConnection)
            .where(
                SpreadsheetConnection.id == connection.id,
                SpreadsheetConnection.token_expiry == previous_expiry,
            )
            .values(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or connection.refresh_token,
                token_expiry=tokens.expires_at(now),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        await self.session.refresh(connection)

        if result.rowcount == 1:
            logger.info(f"Refreshed Google token for user {connection.user_id}")
            return tokens.access_token

        logger.info(f"Google token for user {connection.user_id} was refreshed by another worker")
        return connection.access_token

    async def disconnect(self, user_id: str, tenant_id: UUID) -> bool:
        """Delete the connection. Returns False when there was nothing to delete."""
        result = await self.session.execute(
            delete(SpreadsheetConnection)
            .where(
                SpreadsheetConnection.user_id == user_id,
                SpreadsheetConnection.tenant_id == tenant_id,
            )
            .execution_options(synchronize_session="fetch")
        )
        await self.session.commit()
        removed = result.rowcount > 0
        if removed:
            logger.info(f"Google connection removed for user {user_id}")
        return removed
