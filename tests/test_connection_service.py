from __future__ import annotations

import datetime as dt
import uuid
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from leadimport.db import as_utc
from leadimport.errors import ExchangeFailedError, InvalidStateError
from leadimport.models.oauth_state import OAuthState
from leadimport.models.spreadsheet_connection import SpreadsheetConnection
from leadimport.services.google_connection_service import GoogleConnectionService
from leadimport.services.google_sheets_service import GoogleApiError, GoogleSheetsService, TokenResponse
from leadimport.services.oauth_state_service import (
    DatabaseStateStore,
    InMemoryStateStore,
    new_pending_authorization,
)
from tests.conftest import create_connection


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


class TestTokenRefresh:
    """Access tokens are refreshed only inside the 5-minute expiry buffer."""

    @pytest.mark.asyncio
    async def test_no_connection_returns_none(self, connection_service, sample_tenant_id, sample_user_id):
        token = await connection_service.get_valid_access_token(sample_user_id, sample_tenant_id)
        assert token is None

    @pytest.mark.asyncio
    async def test_valid_token_returned_without_refresh(
        self, connection_service, provider, db_session, sample_tenant_id, sample_user_id, clock
    ):
        await create_connection(
            db_session, sample_tenant_id, sample_user_id, clock() + dt.timedelta(minutes=30)
        )

        token = await connection_service.get_valid_access_token(sample_user_id, sample_tenant_id)

        assert token == "access-stored"
        assert provider.refresh_calls == []

    @pytest.mark.asyncio
    async def test_token_inside_buffer_is_refreshed_once(
        self, connection_service, provider, db_session, sample_tenant_id, sample_user_id, clock
    ):
        await create_connection(
            db_session, sample_tenant_id, sample_user_id, clock() + dt.timedelta(minutes=2)
        )

        token = await connection_service.get_valid_access_token(sample_user_id, sample_tenant_id)

        assert token == "access-refreshed"
        assert provider.refresh_calls == ["refresh-stored"]

        connection = await connection_service.get_connection(sample_user_id, sample_tenant_id)
        assert connection.access_token == "access-refreshed"
        # Google omitted a new refresh token, so the stored one survives
        assert connection.refresh_token == "refresh-stored"
        assert as_utc(connection.token_expiry) == clock() + dt.timedelta(seconds=3600)

        # The new token is outside the buffer, so no second refresh
        again = await connection_service.get_valid_access_token(sample_user_id, sample_tenant_id)
        assert again == "access-refreshed"
        assert len(provider.refresh_calls) == 1

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed(
        self, connection_service, provider, db_session, sample_tenant_id, sample_user_id, clock
    ):
        await create_connection(
            db_session, sample_tenant_id, sample_user_id, clock() - dt.timedelta(hours=2)
        )

        token = await connection_service.get_valid_access_token(sample_user_id, sample_tenant_id)

        assert token == "access-refreshed"

    @pytest.mark.asyncio
    async def test_refresh_failure_returns_none(
        self, connection_service, provider, db_session, sample_tenant_id, sample_user_id, clock
    ):
        await create_connection(
            db_session, sample_tenant_id, sample_user_id, clock() + dt.timedelta(minutes=1)
        )
        provider.refresh_error = GoogleApiError("invalid_grant", status=400)

        token = await connection_service.get_valid_access_token(sample_user_id, sample_tenant_id)

        assert token is None
        connection = await connection_service.get_connection(sample_user_id, sample_tenant_id)
        assert connection.access_token == "access-stored"

    @pytest.mark.asyncio
    async def test_refresh_lost_to_another_worker(
        self, connection_service, provider, db_session, sample_tenant_id, sample_user_id, clock
    ):
        """Only the writer that still sees the old expiry stores its tokens."""
        connection = await create_connection(
            db_session, sample_tenant_id, sample_user_id, clock() + dt.timedelta(minutes=1)
        )
        # Another worker refreshes behind this session's back
        await db_session.execute(
            update(SpreadsheetConnection)
            .where(SpreadsheetConnection.id == connection.id)
            .values(access_token="access-other-worker", token_expiry=clock() + dt.timedelta(hours=1))
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()

        token = await connection_service._refresh(connection)

        assert token == "access-other-worker"
        assert provider.refresh_calls == ["refresh-stored"]
        stored = await connection_service.get_connection(sample_user_id, sample_tenant_id)
        assert stored.access_token == "access-other-worker"

    @pytest.mark.asyncio
    async def test_malformed_refresh_response_returns_none(
        self, db_session, state_store, sample_tenant_id, sample_user_id, clock
    ):
        google = GoogleSheetsService(
            "client-id",
            "client-secret",
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={"access_token": "a", "expires_in": "soon"})
            ),
        )
        service = GoogleConnectionService(db_session, google, state_store, clock=clock)
        await create_connection(
            db_session, sample_tenant_id, sample_user_id, clock() + dt.timedelta(minutes=1)
        )

        token = await service.get_valid_access_token(sample_user_id, sample_tenant_id)
        await google.close()

        assert token is None
        connection = await service.get_connection(sample_user_id, sample_tenant_id)
        assert connection.access_token == "access-stored"


class TestAuthorizationHandshake:
    @pytest.mark.asyncio
    async def test_begin_authorization_stores_state(
        self, connection_service, state_store, sample_tenant_id, sample_user_id
    ):
        url = await connection_service.begin_authorization(sample_user_id, sample_tenant_id)

        params = parse_qs(urlparse(url).query)
        assert params["redirect_uri"] == ["http://testserver/api/lead-imports/google/callback"]
        assert len(state_store) == 1
        assert len(params["state"][0]) >= 32

    @pytest.mark.asyncio
    async def test_complete_authorization_creates_connection(
        self, connection_service, provider, sample_tenant_id, sample_user_id, clock
    ):
        url = await connection_service.begin_authorization(sample_user_id, sample_tenant_id)

        connection = await connection_service.complete_authorization("code-1", _state_from(url))

        assert provider.exchange_calls == ["code-1"]
        assert connection.tenant_id == sample_tenant_id
        assert connection.user_id == sample_user_id
        assert connection.external_account_email == "owner@example.com"
        assert connection.access_token == "access-initial"
        assert connection.refresh_token == "refresh-initial"
        assert "spreadsheets.readonly" in connection.granted_scopes
        assert as_utc(connection.token_expiry) == clock() + dt.timedelta(hours=1)

        status = await connection_service.get_status(sample_user_id, sample_tenant_id)
        assert status["is_connected"] is True
        assert status["external_account_email"] == "owner@example.com"
        assert status["connected_at"] == clock()

    @pytest.mark.asyncio
    async def test_reconnect_updates_existing_row(
        self, connection_service, provider, db_session, sample_tenant_id, sample_user_id, clock
    ):
        first = await connection_service.begin_authorization(sample_user_id, sample_tenant_id)
        await connection_service.complete_authorization("code-1", _state_from(first))

        clock.advance(minutes=30)
        provider.tokens = TokenResponse(
            access_token="access-second", refresh_token=None, expires_in=1800, email="owner@example.com"
        )
        second = await connection_service.begin_authorization(sample_user_id, sample_tenant_id)
        connection = await connection_service.complete_authorization("code-2", _state_from(second))

        count = await db_session.scalar(select(func.count()).select_from(SpreadsheetConnection))
        assert count == 1
        assert connection.access_token == "access-second"
        assert connection.refresh_token == "refresh-initial"

    @pytest.mark.asyncio
    async def test_state_cannot_be_replayed(
        self, connection_service, provider, sample_tenant_id, sample_user_id
    ):
        url = await connection_service.begin_authorization(sample_user_id, sample_tenant_id)
        state = _state_from(url)
        await connection_service.complete_authorization("code-1", state)

        with pytest.raises(InvalidStateError):
            await connection_service.complete_authorization("code-1", state)
        assert provider.exchange_calls == ["code-1"]

    @pytest.mark.asyncio
    async def test_unknown_state_rejected(self, connection_service, provider):
        with pytest.raises(InvalidStateError):
            await connection_service.complete_authorization("code-1", "forged-state")
        assert provider.exchange_calls == []

    @pytest.mark.asyncio
    async def test_expired_state_rejected(
        self, connection_service, provider, sample_tenant_id, sample_user_id, clock
    ):
        url = await connection_service.begin_authorization(sample_user_id, sample_tenant_id)
        clock.advance(minutes=11)

        with pytest.raises(InvalidStateError):
            await connection_service.complete_authorization("code-1", _state_from(url))
        assert provider.exchange_calls == []

    @pytest.mark.asyncio
    async def test_exchange_failure_creates_nothing(
        self, connection_service, provider, state_store, sample_tenant_id, sample_user_id
    ):
        provider.exchange_error = GoogleApiError("invalid_grant", status=400)
        url = await connection_service.begin_authorization(sample_user_id, sample_tenant_id)

        with pytest.raises(ExchangeFailedError):
            await connection_service.complete_authorization("bad-code", _state_from(url))

        assert await connection_service.get_connection(sample_user_id, sample_tenant_id) is None
        # The state was spent even though the exchange failed
        assert len(state_store) == 0

    @pytest.mark.asyncio
    async def test_missing_email_falls_back_to_unknown(
        self, connection_service, provider, sample_tenant_id, sample_user_id
    ):
        provider.tokens = TokenResponse(
            access_token="access-initial", refresh_token="refresh-initial", expires_in=3600
        )
        url = await connection_service.begin_authorization(sample_user_id, sample_tenant_id)

        connection = await connection_service.complete_authorization("code-1", _state_from(url))

        assert connection.external_account_email == "unknown"


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(
        self, connection_service, connected_user, sample_tenant_id, sample_user_id
    ):
        assert await connection_service.disconnect(sample_user_id, sample_tenant_id) is True
        assert await connection_service.disconnect(sample_user_id, sample_tenant_id) is False

        status = await connection_service.get_status(sample_user_id, sample_tenant_id)
        assert status == {"is_connected": False, "external_account_email": None, "connected_at": None}

    @pytest.mark.asyncio
    async def test_disconnect_scoped_to_tenant(
        self, connection_service, connected_user, sample_tenant_id, sample_user_id
    ):
        assert await connection_service.disconnect(sample_user_id, uuid.uuid4()) is False
        assert await connection_service.get_connection(sample_user_id, sample_tenant_id) is not None


class TestInMemoryStateStore:
    @pytest.mark.asyncio
    async def test_consume_once(self, clock):
        store = InMemoryStateStore(clock=clock)
        pending = new_pending_authorization("user-1", uuid.uuid4(), now=clock())
        await store.put(pending)

        assert await store.consume(pending.state) == pending
        assert await store.consume(pending.state) is None

    @pytest.mark.asyncio
    async def test_expired_entries_evicted(self, clock):
        store = InMemoryStateStore(clock=clock)
        await store.put(new_pending_authorization("user-1", uuid.uuid4(), now=clock()))
        clock.advance(minutes=10)
        await store.put(new_pending_authorization("user-2", uuid.uuid4(), now=clock()))

        assert len(store) == 1


class TestDatabaseStateStore:
    @pytest.mark.asyncio
    async def test_consume_once(self, db_session: AsyncSession, clock):
        store = DatabaseStateStore(db_session, clock=clock)
        tenant_id = uuid.uuid4()
        pending = new_pending_authorization("user-1", tenant_id, now=clock())
        await store.put(pending)

        consumed = await store.consume(pending.state)
        assert consumed is not None
        assert consumed.user_id == "user-1"
        assert consumed.tenant_id == tenant_id
        assert await store.consume(pending.state) is None

    @pytest.mark.asyncio
    async def test_expired_state_rejected_and_removed(self, db_session: AsyncSession, clock):
        store = DatabaseStateStore(db_session, clock=clock)
        pending = new_pending_authorization("user-1", uuid.uuid4(), now=clock())
        await store.put(pending)
        clock.advance(minutes=10, seconds=1)

        assert await store.consume(pending.state) is None
        count = await db_session.scalar(select(func.count()).select_from(OAuthState))
        assert count == 0

    @pytest.mark.asyncio
    async def test_put_purges_expired_rows(self, db_session: AsyncSession, clock):
        store = DatabaseStateStore(db_session, clock=clock)
        await store.put(new_pending_authorization("user-1", uuid.uuid4(), now=clock()))
        clock.advance(minutes=15)
        await store.put(new_pending_authorization("user-2", uuid.uuid4(), now=clock()))

        count = await db_session.scalar(select(func.count()).select_from(OAuthState))
        assert count == 1

    @pytest.mark.asyncio
    async def test_handshake_through_database_store(
        self, db_session: AsyncSession, provider, clock, sample_tenant_id, sample_user_id
    ):
        service = GoogleConnectionService(
            db_session,
            provider,
            DatabaseStateStore(db_session, clock=clock),
            redirect_uri="http://testserver/callback",
            clock=clock,
        )
        url = await service.begin_authorization(sample_user_id, sample_tenant_id)
        state = _state_from(url)

        await service.complete_authorization("code-1", state)
        with pytest.raises(InvalidStateError):
            await service.complete_authorization("code-1", state)
