from __future__ import annotations

import datetime as dt
import uuid
from typing import AsyncGenerator, Dict, List, Optional, Sequence
from urllib.parse import urlencode

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from leadimport.api.deps import get_spreadsheet_provider, require_oauth_configured
from leadimport.db import Base, build_engine, get_db
from leadimport.main import app
from leadimport.models import contact, import_batch, oauth_state  # noqa: F401
from leadimport.models.spreadsheet_connection import SpreadsheetConnection
from leadimport.services.google_connection_service import GoogleConnectionService
from leadimport.services.google_sheets_service import (
    GoogleApiError,
    SheetData,
    SpreadsheetFile,
    SpreadsheetInfo,
    TokenResponse,
)
from leadimport.services.lead_import_service import LeadImportService
from leadimport.services.oauth_state_service import InMemoryStateStore, memory_state_store

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FrozenClock:
    """Deterministic clock; call it to read the time."""

    def __init__(self, now: Optional[dt.datetime] = None) -> None:
        self.now = now or dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + dt.timedelta(**kwargs)


class FakeSheetsProvider:
    """In-memory stand-in for the Google Sheets adapter."""

    def __init__(self) -> None:
        self.spreadsheets: Dict[str, Dict] = {}
        self.files: List[SpreadsheetFile] = []
        self.exchange_calls: List[str] = []
        self.refresh_calls: List[str] = []
        self.read_calls = 0
        self.exchange_error: Optional[Exception] = None
        self.refresh_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None
        self.closed = False
        self.tokens = TokenResponse(
            access_token="access-initial",
            refresh_token="refresh-initial",
            expires_in=3600,
            email="owner@example.com",
        )
        self.refreshed_tokens = TokenResponse(
            access_token="access-refreshed", refresh_token=None, expires_in=3600
        )

    def add_spreadsheet(
        self, spreadsheet_id: str, name: str, tabs: Dict[str, Sequence[Sequence[str]]]
    ) -> None:
        self.spreadsheets[spreadsheet_id] = {"name": name, "tabs": dict(tabs)}

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        return "https://accounts.example.test/auth?" + urlencode(
            {"state": state, "redirect_uri": redirect_uri}
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        self.exchange_calls.append(code)
        if self.exchange_error:
            raise self.exchange_error
        return self.tokens

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error:
            raise self.refresh_error
        return self.refreshed_tokens

    async def list_spreadsheets(self, access_token: str) -> List[SpreadsheetFile]:
        if self.read_error:
            raise self.read_error
        return list(self.files)

    async def get_spreadsheet_info(self, access_token: str, spreadsheet_id: str) -> SpreadsheetInfo:
        if self.read_error:
            raise self.read_error
        if spreadsheet_id not in self.spreadsheets:
            raise GoogleApiError("Requested entity was not found.", status=404)
        sheet = self.spreadsheets[spreadsheet_id]
        return SpreadsheetInfo(spreadsheet_id, sheet["name"], list(sheet["tabs"]))

    async def read_sheet(
        self,
        access_token: str,
        spreadsheet_id: str,
        sheet_name: Optional[str] = None,
        header_row: int = 1,
    ) -> SheetData:
        self.read_calls += 1
        info = await self.get_spreadsheet_info(access_token, spreadsheet_id)
        tab = sheet_name or info.sheet_names[0]
        if tab not in self.spreadsheets[spreadsheet_id]["tabs"]:
            raise GoogleApiError(f"Unable to parse range: {tab}", status=400)
        values = self.spreadsheets[spreadsheet_id]["tabs"][tab]
        return SheetData.from_values(values, header_row=header_row)

    async def close(self) -> None:
        self.closed = True


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Fresh in-memory database per test."""
    engine = build_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture(autouse=True)
def clear_states():
    """Ensure the process-wide state store is empty before and after each test."""
    memory_state_store.clear()
    yield
    memory_state_store.clear()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def provider() -> FakeSheetsProvider:
    return FakeSheetsProvider()


@pytest.fixture
def sample_tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def sample_user_id() -> str:
    return f"user-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def state_store(clock: FrozenClock) -> InMemoryStateStore:
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def connection_service(
    db_session: AsyncSession,
    provider: FakeSheetsProvider,
    state_store: InMemoryStateStore,
    clock: FrozenClock,
) -> GoogleConnectionService:
    return GoogleConnectionService(
        db_session,
        provider,
        state_store,
        redirect_uri="http://testserver/api/lead-imports/google/callback",
        clock=clock,
    )


@pytest.fixture
def import_service(
    db_session: AsyncSession,
    provider: FakeSheetsProvider,
    connection_service: GoogleConnectionService,
    clock: FrozenClock,
) -> LeadImportService:
    return LeadImportService(db_session, provider, connection_service, read_timeout=5, clock=clock)


async def create_connection(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    user_id: str,
    expires_at: dt.datetime,
    access_token: str = "access-stored",
    refresh_token: str = "refresh-stored",
) -> SpreadsheetConnection:
    connection = SpreadsheetConnection(
        tenant_id=tenant_id,
        user_id=user_id,
        external_account_email="owner@example.com",
        access_token=access_token,
        refresh_token=refresh_token,
        token_expiry=expires_at,
        granted_scopes="spreadsheets.readonly,drive.metadata.readonly",
        created_at=expires_at - dt.timedelta(hours=1),
        updated_at=expires_at - dt.timedelta(hours=1),
    )
    session.add(connection)
    await session.commit()
    return connection


@pytest_asyncio.fixture
async def connected_user(
    db_session: AsyncSession,
    sample_tenant_id: uuid.UUID,
    sample_user_id: str,
    clock: FrozenClock,
) -> SpreadsheetConnection:
    """A connection whose token is valid for another hour."""
    return await create_connection(
        db_session, sample_tenant_id, sample_user_id, clock() + dt.timedelta(hours=1)
    )


@pytest.fixture
def contacts_sheet(provider: FakeSheetsProvider) -> str:
    provider.add_spreadsheet(
        "sheet-contacts",
        "Spring Leads",
        {
            "Leads": [
                ["First Name", "Last Name", "Email", "Phone"],
                ["Ann", "Lee", "ann@x.com", "555-1"],
            ],
            "Archive": [["Email"]],
        },
    )
    return "sheet-contacts"


@pytest_asyncio.fixture
async def api_client(
    db_session: AsyncSession, provider: FakeSheetsProvider
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """HTTP client against the app with the database and Google adapter overridden."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_provider() -> AsyncGenerator[FakeSheetsProvider, None]:
        yield provider

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_spreadsheet_provider] = override_provider
    app.dependency_overrides[require_oauth_configured] = lambda: None

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()
