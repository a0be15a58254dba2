from __future__ import annotations

import logging
from typing import List, Optional
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import RedirectResponse

from leadimport.api.deps import (
    Principal,
    get_connection_service,
    get_current_principal,
    get_lead_import_service,
    require_elevated_role,
    require_oauth_configured,
)
from leadimport.config import DEFAULT_BATCH_LIMIT, settings
from leadimport.errors import ExchangeFailedError, InvalidStateError
from leadimport.schemas.lead_import import (
    AuthorizationUrlResponse,
    ConnectionStatus,
    ExecuteImportRequest,
    ImportBatchSummary,
    ImportResultResponse,
    ImportRowError,
    PreviewImportRequest,
    PreviewImportResponse,
    SpreadsheetListItem,
)
from leadimport.services.google_connection_service import GoogleConnectionService
from leadimport.services.lead_import_service import LeadImportService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/lead-imports", tags=["Lead Imports"])


def _integrations_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(
        url=f"{settings.integrations_page_url}?{urlencode(params)}", status_code=302
    )


# -------------------------------------------------------------------------
# Google connection
# -------------------------------------------------------------------------


@router.get("/google/status", response_model=ConnectionStatus)
async def google_connection_status(
    principal: Principal = Depends(get_current_principal),
    connections: GoogleConnectionService = Depends(get_connection_service),
) -> ConnectionStatus:
    """Report whether the caller has connected a Google account."""
    status = await connections.get_status(principal.user_id, principal.tenant_id)
    return ConnectionStatus(**status)


@router.get(
    "/google/auth-url",
    response_model=AuthorizationUrlResponse,
    dependencies=[Depends(require_oauth_configured)],
)
async def google_authorization_url(
    principal: Principal = Depends(require_elevated_role),
    connections: GoogleConnectionService = Depends(get_connection_service),
) -> AuthorizationUrlResponse:
    url = await connections.begin_authorization(principal.user_id, principal.tenant_id)
    return AuthorizationUrlResponse(authorization_url=url)


@router.get("/google/callback", dependencies=[Depends(require_oauth_configured)])
async def google_oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    connections: GoogleConnectionService = Depends(get_connection_service),
) -> RedirectResponse:
    """Public redirect target for Google's consent screen."""
    if error:
        logger.warning(f"Google OAuth error: {error}")
        if state:
            await connections.discard_state(state)
        return _integrations_redirect(error=error)

    if not code or not state:
        return _integrations_redirect(error="missing_parameters")

    try:
        await connections.complete_authorization(code, state)
    except (InvalidStateError, ExchangeFailedError) as e:
        return _integrations_redirect(error=e.code)
    except Exception:
        logger.exception("Unexpected error completing Google OAuth callback")
        return _integrations_redirect(error=ExchangeFailedError().code)

    return _integrations_redirect(google="connected")


@router.delete("/google/disconnect", status_code=204)
async def google_disconnect(
    principal: Principal = Depends(require_elevated_role),
    connections: GoogleConnectionService = Depends(get_connection_service),
) -> Response:
    await connections.disconnect(principal.user_id, principal.tenant_id)
    return Response(status_code=204)


# -------------------------------------------------------------------------
# Spreadsheets and import
# -------------------------------------------------------------------------


@router.get("/google/sheets", response_model=List[SpreadsheetListItem])
async def list_google_sheets(
    principal: Principal = Depends(require_elevated_role),
    service: LeadImportService = Depends(get_lead_import_service),
) -> List[SpreadsheetListItem]:
    """List the caller's spreadsheets, most recently modified first."""
    return await service.list_spreadsheets(principal.user_id, principal.tenant_id)


@router.post("/google/preview", response_model=PreviewImportResponse)
async def preview_import(
    payload: PreviewImportRequest,
    principal: Principal = Depends(require_elevated_role),
    service: LeadImportService = Depends(get_lead_import_service),
) -> PreviewImportResponse:
    return await service.preview(
        principal.tenant_id,
        principal.user_id,
        payload.spreadsheet_id,
        sheet_name=payload.sheet_name,
        header_row=payload.header_row,
        column_mapping=payload.column_mapping,
    )


@router.post("/google/import", response_model=ImportResultResponse)
async def execute_import(
    payload: ExecuteImportRequest,
    principal: Principal = Depends(require_elevated_role),
    service: LeadImportService = Depends(get_lead_import_service),
) -> ImportResultResponse:
    return await service.execute(
        principal.tenant_id,
        principal.user_id,
        payload.spreadsheet_id,
        payload.column_mapping,
        duplicate_strategy=payload.duplicate_strategy,
        default_source=payload.default_source,
        sheet_name=payload.sheet_name,
    )


# -------------------------------------------------------------------------
# Batch ledger
# -------------------------------------------------------------------------


@router.get("/batches", response_model=List[ImportBatchSummary])
async def list_import_batches(
    limit: int = Query(DEFAULT_BATCH_LIMIT),
    principal: Principal = Depends(get_current_principal),
    service: LeadImportService = Depends(get_lead_import_service),
) -> List[ImportBatchSummary]:
    return await service.list_batches(principal.tenant_id, limit=limit)


@router.get("/batches/{batch_id}", response_model=ImportBatchSummary)
async def get_import_batch(
    batch_id: UUID,
    principal: Principal = Depends(get_current_principal),
    service: LeadImportService = Depends(get_lead_import_service),
) -> ImportBatchSummary:
    return await service.get_batch(principal.tenant_id, batch_id)


@router.get("/batches/{batch_id}/errors", response_model=List[ImportRowError])
async def get_import_batch_errors(
    batch_id: UUID,
    principal: Principal = Depends(get_current_principal),
    service: LeadImportService = Depends(get_lead_import_service),
) -> List[ImportRowError]:
    return await service.get_batch_errors(principal.tenant_id, batch_id)
