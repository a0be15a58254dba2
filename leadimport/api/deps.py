from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncGenerator, Optional
from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from leadimport.config import settings
from leadimport.db import get_db
from leadimport.errors import AuthenticationError, AuthorizationError, ConfigurationError
from leadimport.services.google_connection_service import GoogleConnectionService
from leadimport.services.google_sheets_service import (
    SpreadsheetProvider,
    create_google_sheets_service,
)
from leadimport.services.lead_import_service import LeadImportService
from leadimport.services.oauth_state_service import create_state_store

ELEVATED_ROLES = {"owner", "admin"}


@dataclass(frozen=True)
class Principal:
    """Caller identity as asserted by the upstream auth gateway."""

    user_id: str
    tenant_id: UUID
    role: str

    @property
    def is_elevated(self) -> bool:
        return self.role.strip().lower() in ELEVATED_ROLES


async def get_current_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_tenant_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Principal:
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Missing user identity")
    if not x_tenant_id:
        raise AuthenticationError("Missing organization context")
    try:
        tenant_id = UUID(x_tenant_id)
    except ValueError:
        raise AuthenticationError("Invalid organization context") from None
    return Principal(user_id=x_user_id.strip(), tenant_id=tenant_id, role=x_user_role or "")


async def require_elevated_role(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    if not principal.is_elevated:
        raise AuthorizationError()
    return principal


async def get_spreadsheet_provider() -> AsyncGenerator[SpreadsheetProvider, None]:
    provider = create_google_sheets_service()
    try:
        yield provider
    finally:
        await provider.close()


def get_connection_service(
    session: AsyncSession = Depends(get_db),
    provider: SpreadsheetProvider = Depends(get_spreadsheet_provider),
) -> GoogleConnectionService:
    return GoogleConnectionService(session, provider, create_state_store(session))


def get_lead_import_service(
    session: AsyncSession = Depends(get_db),
    provider: SpreadsheetProvider = Depends(get_spreadsheet_provider),
    connections: GoogleConnectionService = Depends(get_connection_service),
) -> LeadImportService:
    return LeadImportService(session, provider, connections)


def require_oauth_configured() -> None:
    if not settings.google_configured:
        raise ConfigurationError()
