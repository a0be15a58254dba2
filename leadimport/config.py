from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

# Load env before anything else
load_dotenv()

OAUTH_STATE_TTL_MINUTES = 10
TOKEN_REFRESH_BUFFER_MINUTES = 5
PREVIEW_SAMPLE_ROWS = 5
MAX_STORED_ERRORS = 100
MAX_RETURNED_ERRORS = 10
DEFAULT_BATCH_LIMIT = 20
MAX_BATCH_LIMIT = 100

GOOGLE_SCOPES = (
    "https://www.googleapis.com/auth/spreadsheets.readonly",
    "https://www.googleapis.com/auth/drive.metadata.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
)
# Stored on the connection row
GRANTED_SCOPES = "spreadsheets.readonly,drive.metadata.readonly"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


@dataclass(frozen=True)
class Settings:
    database_url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    )
    google_client_id: str = field(default_factory=lambda: os.getenv("GOOGLE_CLIENT_ID", ""))
    google_client_secret: str = field(
        default_factory=lambda: os.getenv("GOOGLE_CLIENT_SECRET", "")
    )
    api_base_url: str = field(
        default_factory=lambda: os.getenv("API_BASE_URL", "http://localhost:8000").rstrip("/")
    )
    frontend_url: str = field(
        default_factory=lambda: os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
    )
    frontend_origin: str = field(
        default_factory=lambda: os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
    )
    google_http_timeout_seconds: int = field(
        default_factory=lambda: _int_env("GOOGLE_HTTP_TIMEOUT_SECONDS", 30)
    )
    import_read_timeout_seconds: int = field(
        default_factory=lambda: _int_env("IMPORT_READ_TIMEOUT_SECONDS", 120)
    )
    oauth_state_backend: str = field(
        default_factory=lambda: os.getenv("OAUTH_STATE_BACKEND", "memory").strip().lower()
    )
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())

    @property
    def google_redirect_uri(self) -> str:
        return f"{self.api_base_url}/api/lead-imports/google/callback"

    @property
    def integrations_page_url(self) -> str:
        return f"{self.frontend_url}/settings/integrations"

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)


settings = Settings()
