from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import quote, urlencode

import httpx

from leadimport.config import GOOGLE_SCOPES, settings
from leadimport.errors import ExternalServiceError

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"
GOOGLE_SHEETS_BASE_URL = "https://sheets.googleapis.com/v4/spreadsheets"

SPREADSHEET_MIME_TYPE = "application/vnd.google-apps.spreadsheet"
DEFAULT_EXPIRES_IN = 3600

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Value types exchanged with the adapter
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    email: Optional[str] = None

    def expires_at(self, now: dt.datetime) -> dt.datetime:
        return now + dt.timedelta(seconds=self.expires_in)


@dataclass(frozen=True)
class SpreadsheetFile:
    id: str
    name: str
    modified_time: Optional[dt.datetime]


@dataclass(frozen=True)
class SpreadsheetInfo:
    id: str
    name: str
    sheet_names: List[str]


@dataclass(frozen=True)
class SheetRow:
    """One data row as ordered (header, value) pairs, numbered as in the sheet."""

    number: int
    cells: Tuple[Tuple[str, str], ...]

    def as_dict(self) -> Dict[str, str]:
        return {header: value for header, value in self.cells}


@dataclass(frozen=True)
class SheetData:
    headers: List[str]
    rows: List[List[str]] = field(default_factory=list)
    header_row: int = 1

    @property
    def total_rows(self) -> int:
        return len(self.rows)

    @classmethod
    def from_values(cls, values: Sequence[Sequence[Any]], header_row: int = 1) -> "SheetData":
        """Split raw cell values into headers and data rows.

        Rows above ``header_row`` are ignored. Cells come back from the API
        as strings; anything else is stringified. A repeated header is
        renamed ``"Email (2)"`` and so on so every column keeps its value.
        """
        if header_row < 1:
            raise ValueError("header_row must be >= 1")
        if len(values) < header_row:
            return cls(headers=[], rows=[], header_row=header_row)

        headers = _unique_headers(_cell_text(cell) for cell in values[header_row - 1])
        rows = [[_cell_text(cell) for cell in row] for row in values[header_row:]]
        return cls(headers=headers, rows=rows, header_row=header_row)

    def row(self, index: int) -> SheetRow:
        """Pair the index-th data row with the headers.

        Cells past the last header are dropped; missing trailing cells read as blank.
        """
        raw = self.rows[index]
        cells = tuple(
            (header, raw[i] if i < len(raw) else "") for i, header in enumerate(self.headers)
        )
        return SheetRow(number=self.header_row + 1 + index, cells=cells)

    def iter_rows(self) -> Iterator[SheetRow]:
        for index in range(len(self.rows)):
            yield self.row(index)


def _unique_headers(raw_headers: Iterable[str]) -> List[str]:
    headers: List[str] = []
    seen = set()
    for header in raw_headers:
        name, n = header, 1
        while name in seen:
            n += 1
            name = f"{header} ({n})".strip()
        seen.add(name)
        headers.append(name)
    return headers


def _cell_text(cell: Any) -> str:
    if cell is None:
        return ""
    return cell if isinstance(cell, str) else str(cell)


class GoogleApiError(ExternalServiceError):
    """A Google endpoint failed or could not be reached."""

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        super().__init__(message, code="google_api_error", **kwargs)
        self.status = status


# ---------------------------------------------------------------------------
# Adapter interface
# ---------------------------------------------------------------------------


class SpreadsheetProvider(Protocol):
    def authorization_url(self, state: str, redirect_uri: str) -> str: ...

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse: ...

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse: ...

    async def list_spreadsheets(self, access_token: str) -> List[SpreadsheetFile]: ...

    async def get_spreadsheet_info(self, access_token: str, spreadsheet_id: str) -> SpreadsheetInfo: ...

    async def read_sheet(
        self,
        access_token: str,
        spreadsheet_id: str,
        sheet_name: Optional[str] = None,
        header_row: int = 1,
    ) -> SheetData: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Google implementation
# ---------------------------------------------------------------------------


class GoogleSheetsService:
    """Google OAuth, Drive, and Sheets calls over httpx."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def _request(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else None
        try:
            response = await self._get_client().request(
                method, url, params=params, data=data, headers=headers
            )
        except httpx.HTTPError as e:
            raise GoogleApiError(f"Google request failed: {e.__class__.__name__}") from e

        if response.status_code >= 400:
            raise GoogleApiError(
                f"Google API returned {response.status_code} for {url}",
                status=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise GoogleApiError(f"Google API returned malformed JSON for {url}") from e
        if not isinstance(payload, dict):
            raise GoogleApiError(f"Google API returned unexpected JSON for {url}")
        return payload

    # -- OAuth ---------------------------------------------------------------

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "access_type": "offline",
            "prompt": "consent",  # Force refresh token to be returned
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        payload = await self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
            },
        )
        access_token = payload.get("access_token")
        if not access_token:
            raise GoogleApiError("Token response did not include an access token")

        email = await self._get_user_email(access_token)
        logger.info(f"Google OAuth token exchanged for {email}")
        return TokenResponse(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=_expires_in(payload),
            email=email,
        )

    async def refresh_access_token(self, refresh_token: str) -> TokenResponse:
        payload = await self._request(
            "POST",
            GOOGLE_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        access_token = payload.get("access_token")
        if not access_token:
            raise GoogleApiError("Refresh response did not include an access token")
        # Google usually omits the refresh token on refresh
        return TokenResponse(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_in=_expires_in(payload),
        )

    async def _get_user_email(self, access_token: str) -> str:
        try:
            payload = await self._request("GET", GOOGLE_USERINFO_URL, access_token=access_token)
        except GoogleApiError as e:
            logger.warning(f"Failed to get user email from Google: {e}")
            return "unknown"
        return payload.get("email") or "unknown"

    # -- Drive / Sheets --------------------------------------------------------

    async def list_spreadsheets(self, access_token: str) -> List[SpreadsheetFile]:
        payload = await self._request(
            "GET",
            GOOGLE_DRIVE_FILES_URL,
            access_token=access_token,
            params={
                "q": f"mimeType='{SPREADSHEET_MIME_TYPE}' and trashed=false",
                "fields": "files(id,name,modifiedTime)",
                "orderBy": "modifiedTime desc",
                "pageSize": 100,
            },
        )
        files = [
            SpreadsheetFile(
                id=item["id"],
                name=item.get("name") or "Untitled",
                modified_time=_parse_rfc3339(item.get("modifiedTime")),
            )
            for item in payload.get("files", [])
            if item.get("id")
        ]
        logger.info(f"Listed {len(files)} Google Sheets")
        return files

    async def get_spreadsheet_info(self, access_token: str, spreadsheet_id: str) -> SpreadsheetInfo:
        payload = await self._request(
            "GET",
            f"{GOOGLE_SHEETS_BASE_URL}/{quote(spreadsheet_id, safe='')}",
            access_token=access_token,
            params={"fields": "spreadsheetId,properties.title,sheets.properties.title"},
        )
        sheet_names = [
            title
            for title in (
                (sheet.get("properties") or {}).get("title") for sheet in payload.get("sheets", [])
            )
            if title
        ]
        return SpreadsheetInfo(
            id=payload.get("spreadsheetId", spreadsheet_id),
            name=(payload.get("properties") or {}).get("title") or "Untitled",
            sheet_names=sheet_names,
        )

    async def read_sheet(
        self,
        access_token: str,
        spreadsheet_id: str,
        sheet_name: Optional[str] = None,
        header_row: int = 1,
    ) -> SheetData:
        if not sheet_name:
            info = await self.get_spreadsheet_info(access_token, spreadsheet_id)
            sheet_name = info.sheet_names[0] if info.sheet_names else "Sheet1"

        # A quoted tab name selects the whole tab
        cell_range = "'" + sheet_name.replace("'", "''") + "'"
        payload = await self._request(
            "GET",
            f"{GOOGLE_SHEETS_BASE_URL}/{quote(spreadsheet_id, safe='')}/values/{quote(cell_range, safe='')}",
            access_token=access_token,
            params={"majorDimension": "ROWS"},
        )
        data = SheetData.from_values(payload.get("values") or [], header_row=header_row)
        logger.info(f"Read {data.total_rows} rows from spreadsheet {spreadsheet_id}")
        return data

    async def close(self) -> None:
        """Clean up resources."""
        if self._client:
            await self._client.aclose()
            self._client = None


def _expires_in(payload: Dict[str, Any]) -> int:
    raw = payload.get("expires_in") or DEFAULT_EXPIRES_IN
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise GoogleApiError(f"Token response has an invalid expires_in: {raw!r}") from None


def _parse_rfc3339(value: Optional[str]) -> Optional[dt.datetime]:
    if not value:
        return None
    try:
        return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


# Factory function for dependency injection
def create_google_sheets_service() -> GoogleSheetsService:
    return GoogleSheetsService(
        settings.google_client_id,
        settings.google_client_secret,
        timeout=settings.google_http_timeout_seconds,
    )
