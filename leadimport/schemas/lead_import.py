from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from leadimport.models.import_batch import DuplicateStrategy
from leadimport.services.column_mapping_service import CANONICAL_FIELDS

ContactSource = Literal["Website", "Referral", "GoogleSheets", "Manual", "Advertisement", "Other"]


class ConnectionStatus(BaseModel):
    is_connected: bool
    external_account_email: Optional[str] = None
    connected_at: Optional[datetime] = None


class AuthorizationUrlResponse(BaseModel):
    authorization_url: str


class SpreadsheetListItem(BaseModel):
    id: str
    name: str
    modified_time: Optional[datetime] = None


def _check_mapping_targets(mapping: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
    if mapping is None:
        return None
    unknown = sorted({field for field in mapping.values() if field not in CANONICAL_FIELDS})
    if unknown:
        raise ValueError(
            f"Unknown contact field(s): {', '.join(unknown)}. "
            f"Must be one of: {', '.join(CANONICAL_FIELDS)}"
        )
    return mapping


class PreviewImportRequest(BaseModel):
    spreadsheet_id: str = Field(min_length=1)
    sheet_name: Optional[str] = None
    header_row: int = Field(default=1, ge=1)
    column_mapping: Optional[Dict[str, str]] = None

    @field_validator("spreadsheet_id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("spreadsheet_id is required")
        return value

    @field_validator("column_mapping")
    @classmethod
    def _known_fields(cls, value: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        return _check_mapping_targets(value)


class PreviewImportResponse(BaseModel):
    spreadsheet_name: str
    available_sheets: List[str]
    detected_columns: List[str]
    suggested_mapping: Dict[str, str]
    column_mapping: Dict[str, str]
    sample_rows: List[Dict[str, str]]
    total_rows: int


class ExecuteImportRequest(BaseModel):
    spreadsheet_id: str = Field(min_length=1)
    sheet_name: Optional[str] = None
    column_mapping: Dict[str, str] = Field(min_length=1)
    duplicate_strategy: DuplicateStrategy = DuplicateStrategy.SKIP
    default_source: ContactSource = "GoogleSheets"

    @field_validator("spreadsheet_id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("spreadsheet_id is required")
        return value

    @field_validator("column_mapping")
    @classmethod
    def _known_fields(cls, value: Dict[str, str]) -> Dict[str, str]:
        return _check_mapping_targets(value)


class ImportRowError(BaseModel):
    row: int
    error: str
    data: Optional[Dict[str, str]] = None


class ImportResultResponse(BaseModel):
    batch_id: UUID
    status: str
    total_rows: int
    imported_count: int
    skipped_count: int
    error_count: int
    errors: List[ImportRowError] = Field(default_factory=list)


class ImportBatchSummary(BaseModel):
    id: UUID
    source_type: str
    source_id: Optional[str] = None
    source_name: Optional[str] = None
    status: str
    total_rows: int
    imported_count: int
    skipped_count: int
    error_count: int
    duplicate_strategy: str
    created_at: datetime
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
