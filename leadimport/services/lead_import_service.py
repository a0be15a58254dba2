from __future__ import annotations

import asyncio
import datetime as dt
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadimport.config import (
    DEFAULT_BATCH_LIMIT,
    MAX_BATCH_LIMIT,
    MAX_RETURNED_ERRORS,
    MAX_STORED_ERRORS,
    PREVIEW_SAMPLE_ROWS,
    settings,
)
from leadimport.db import utcnow
from leadimport.errors import (
    ExternalServiceError,
    NotConnectedError,
    NotFoundError,
    ValidationError,
)
from leadimport.models.contact import CONTACT_SOURCES, PLACEHOLDER_NAME, Contact
from leadimport.models.import_batch import DuplicateStrategy, ImportBatch, ImportBatchStatus
from leadimport.schemas.lead_import import (
    ImportBatchSummary,
    ImportResultResponse,
    ImportRowError,
    PreviewImportResponse,
    SpreadsheetListItem,
)
from leadimport.services.column_mapping_service import (
    CANONICAL_FIELDS,
    AliasTable,
    suggest_column_mapping,
)
from leadimport.services.google_connection_service import GoogleConnectionService
from leadimport.services.google_sheets_service import (
    GoogleApiError,
    SheetData,
    SheetRow,
    SpreadsheetInfo,
    SpreadsheetProvider,
)

logger = logging.getLogger(__name__)

MISSING_EMAIL = "Missing email address"
SOURCE_TYPE = "GoogleSheets"

READ_FAILED_MESSAGE = "Failed to read spreadsheet. Please check the ID and try again."
LIST_FAILED_MESSAGE = "Failed to list Google Sheets. Please try again."


# ---------------------------------------------------------------------------
# Row mapping and per-row outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ContactFields:
    """Candidate contact values projected from one sheet row."""

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    notes: Optional[str] = None


_FIELD_ATTRIBUTES = {
    "firstName": "first_name",
    "lastName": "last_name",
    "email": "email",
    "phone": "phone",
    "company": "company",
    "notes": "notes",
}


def map_row_to_contact_fields(row: SheetRow, column_mapping: Mapping[str, str]) -> ContactFields:
    """Project a row onto contact fields. Blank and unmapped cells are ignored."""
    values: Dict[str, str] = {}
    cells = row.as_dict()
    for column_name, field_name in column_mapping.items():
        attribute = _FIELD_ATTRIBUTES.get(field_name)
        raw = cells.get(column_name)
        if attribute is None or raw is None or not raw.strip():
            continue
        value = raw.strip()
        if attribute == "email":
            value = value.lower()
        values[attribute] = value
    return ContactFields(**values)


class RowOutcome(str, enum.Enum):
    IMPORTED = "imported"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass(frozen=True)
class RowResult:
    outcome: RowOutcome
    row: int
    error: Optional[str] = None
    data: Optional[Dict[str, str]] = None

    @property
    def error_record(self) -> Optional[Dict[str, Any]]:
        if self.error is None:
            return None
        return {"row": self.row, "error": self.error, "data": self.data}


@dataclass
class BatchTally:
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    error_records: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.imported + self.skipped + self.errors

    def add(self, result: RowResult) -> None:
        if result.outcome is RowOutcome.IMPORTED:
            self.imported += 1
        elif result.outcome is RowOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1
        record = result.error_record
        if record is not None:
            self.error_records.append(record)

    def abort_remaining(self, first_row: int, remaining: int, reason: str) -> None:
        """Count rows never reached as errors so the totals still add up.

        The summary record goes first so the stored error cap never drops it.
        """
        self.errors += remaining
        self.error_records.insert(
            0,
            {"row": first_row, "error": f"Import aborted before this row: {reason}", "data": None},
        )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class LeadImportService:
    """Preview and execute Google Sheets lead imports for one tenant user."""

    def __init__(
        self,
        session: AsyncSession,
        provider: SpreadsheetProvider,
        connections: GoogleConnectionService,
        aliases: Optional[AliasTable] = None,
        read_timeout: Optional[float] = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> None:
        self.session = session
        self.provider = provider
        self.connections = connections
        self.aliases = aliases
        self.read_timeout = read_timeout or settings.import_read_timeout_seconds
        self._clock = clock

    async def _require_access_token(self, user_id: str, tenant_id: UUID) -> str:
        token = await self.connections.get_valid_access_token(user_id, tenant_id)
        if token is None:
            raise NotConnectedError()
        return token

    async def _read_source(
        self,
        access_token: str,
        spreadsheet_id: str,
        sheet_name: Optional[str],
        header_row: int = 1,
    ) -> Tuple[SpreadsheetInfo, SheetData]:
        async def read() -> Tuple[SpreadsheetInfo, SheetData]:
            info = await self.provider.get_spreadsheet_info(access_token, spreadsheet_id)
            data = await self.provider.read_sheet(
                access_token, spreadsheet_id, sheet_name or None, header_row=header_row
            )
            return info, data

        try:
            return await asyncio.wait_for(read(), timeout=self.read_timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Timed out reading spreadsheet {spreadsheet_id}")
            raise ExternalServiceError(READ_FAILED_MESSAGE) from e
        except GoogleApiError as e:
            logger.error(f"Failed to read spreadsheet {spreadsheet_id}: {e}")
            raise ExternalServiceError(READ_FAILED_MESSAGE) from e

    async def list_spreadsheets(self, user_id: str, tenant_id: UUID) -> List[SpreadsheetListItem]:
        token = await self._require_access_token(user_id, tenant_id)
        try:
            files = await asyncio.wait_for(
                self.provider.list_spreadsheets(token), timeout=self.read_timeout
            )
        except (GoogleApiError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to list Google Sheets for user {user_id}: {e!r}")
            raise ExternalServiceError(LIST_FAILED_MESSAGE) from e

        min_time = dt.datetime.min.replace(tzinfo=dt.timezone.utc)
        files = sorted(files, key=lambda f: f.modified_time or min_time, reverse=True)
        return [SpreadsheetListItem(id=f.id, name=f.name, modified_time=f.modified_time) for f in files]

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    async def preview(
        self,
        tenant_id: UUID,
        user_id: str,
        spreadsheet_id: str,
        sheet_name: Optional[str] = None,
        header_row: int = 1,
        column_mapping: Optional[Mapping[str, str]] = None,
    ) -> PreviewImportResponse:
        """Read a sheet and suggest a column mapping. Writes nothing."""
        spreadsheet_id = (spreadsheet_id or "").strip()
        if not spreadsheet_id:
            raise ValidationError(details={"field": "spreadsheet_id", "error": "required"})
        if header_row < 1:
            raise ValidationError(details={"field": "header_row", "error": "must be >= 1"})

        token = await self._require_access_token(user_id, tenant_id)
        info, data = await self._read_source(token, spreadsheet_id, sheet_name, header_row)

        suggested = suggest_column_mapping(data.headers, self.aliases)
        active = dict(column_mapping) if column_mapping is not None else suggested
        sample_rows = [
            data.row(i).as_dict() for i in range(min(PREVIEW_SAMPLE_ROWS, data.total_rows))
        ]

        return PreviewImportResponse(
            spreadsheet_name=info.name,
            available_sheets=list(info.sheet_names),
            detected_columns=list(data.headers),
            suggested_mapping=suggested,
            column_mapping=active,
            sample_rows=sample_rows,
            total_rows=data.total_rows,
        )

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    def _validate_execute_args(
        self,
        spreadsheet_id: str,
        column_mapping: Mapping[str, str],
        duplicate_strategy: Union[DuplicateStrategy, str],
        default_source: str,
    ) -> DuplicateStrategy:
        if not spreadsheet_id:
            raise ValidationError(details={"field": "spreadsheet_id", "error": "required"})
        if not column_mapping:
            raise ValidationError(details={"field": "column_mapping", "error": "required"})
        unknown = sorted({f for f in column_mapping.values() if f not in CANONICAL_FIELDS})
        if unknown:
            raise ValidationError(
                details={"field": "column_mapping", "error": f"unknown fields: {', '.join(unknown)}"}
            )
        try:
            strategy = DuplicateStrategy(duplicate_strategy)
        except ValueError:
            valid = ", ".join(s.value for s in DuplicateStrategy)
            raise ValidationError(
                details={
                    "field": "duplicate_strategy",
                    "error": f"Invalid strategy. Must be one of: {valid}",
                }
            ) from None
        if default_source not in CONTACT_SOURCES:
            raise ValidationError(
                details={
                    "field": "default_source",
                    "error": f"Invalid source. Must be one of: {', '.join(CONTACT_SOURCES)}",
                }
            )
        return strategy

    async def execute(
        self,
        tenant_id: UUID,
        user_id: str,
        spreadsheet_id: str,
        column_mapping: Mapping[str, str],
        duplicate_strategy: Union[DuplicateStrategy, str] = DuplicateStrategy.SKIP,
        default_source: str = SOURCE_TYPE,
        sheet_name: Optional[str] = None,
    ) -> ImportResultResponse:
        """Import every row of a sheet as contacts and record the batch.

        Either no batch is created (the sheet could not be read) or the
        batch ends Completed/Failed with every row accounted for.
        """
        spreadsheet_id = (spreadsheet_id or "").strip()
        strategy = self._validate_execute_args(
            spreadsheet_id, column_mapping, duplicate_strategy, default_source
        )
        mapping = dict(column_mapping)

        token = await self._require_access_token(user_id, tenant_id)
        info, data = await self._read_source(token, spreadsheet_id, sheet_name)

        batch = ImportBatch(
            tenant_id=tenant_id,
            user_id=user_id,
            source_type=SOURCE_TYPE,
            source_id=spreadsheet_id,
            source_name=info.name,
            status=ImportBatchStatus.PROCESSING.value,
            total_rows=data.total_rows,
            column_mapping=mapping,
            duplicate_strategy=strategy.value,
            created_at=self._clock(),
        )
        self.session.add(batch)
        await self.session.commit()
        batch_id = batch.id

        tally = BatchTally()
        try:
            for row in data.iter_rows():
                result = await self._import_row(
                    tenant_id, batch_id, spreadsheet_id, row, mapping, strategy, default_source
                )
                tally.add(result)
        except BaseException as e:
            logger.exception(f"Import batch {batch_id} aborted")
            await self._finalize(batch_id, tally, data, aborted=repr(e))
            raise

        batch = await self._finalize(batch_id, tally, data)

        logger.info(
            f"Import completed: BatchId={batch.id}, Imported={batch.imported_count}, "
            f"Skipped={batch.skipped_count}, Errors={batch.error_count}"
        )
        return ImportResultResponse(
            batch_id=batch.id,
            status=batch.status,
            total_rows=batch.total_rows,
            imported_count=batch.imported_count,
            skipped_count=batch.skipped_count,
            error_count=batch.error_count,
            errors=[ImportRowError(**record) for record in tally.error_records[:MAX_RETURNED_ERRORS]],
        )

    async def _find_contact(self, tenant_id: UUID, email: str) -> Optional[Contact]:
        stmt = (
            select(Contact)
            .where(Contact.tenant_id == tenant_id, Contact.email == email)
            .order_by(Contact.created_at)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def _import_row(
        self,
        tenant_id: UUID,
        batch_id: UUID,
        spreadsheet_id: str,
        row: SheetRow,
        mapping: Mapping[str, str],
        strategy: DuplicateStrategy,
        default_source: str,
    ) -> RowResult:
        """Reconcile one row against existing contacts and commit it on its own."""
        try:
            fields = map_row_to_contact_fields(row, mapping)
            if not fields.email:
                return RowResult(RowOutcome.SKIPPED, row.number, MISSING_EMAIL, row.as_dict())

            existing = await self._find_contact(tenant_id, fields.email)
            if existing is not None and strategy is DuplicateStrategy.SKIP:
                return RowResult(RowOutcome.SKIPPED, row.number)

            now = self._clock()
            if existing is not None and strategy is DuplicateStrategy.UPDATE:
                existing.first_name = fields.first_name or PLACEHOLDER_NAME
                existing.last_name = fields.last_name or PLACEHOLDER_NAME
                existing.phone = fields.phone
                existing.company = fields.company
                existing.notes = fields.notes
                existing.updated_at = now
            else:
                self.session.add(
                    Contact(
                        tenant_id=tenant_id,
                        first_name=fields.first_name or PLACEHOLDER_NAME,
                        last_name=fields.last_name or PLACEHOLDER_NAME,
                        email=fields.email,
                        phone=fields.phone,
                        company=fields.company,
                        notes=fields.notes,
                        source=default_source,
                        status="New",
                        import_batch_id=batch_id,
                        import_source_id=spreadsheet_id,
                        created_at=now,
                        updated_at=now,
                    )
                )
            # Later rows in the same file must see this write
            await self.session.commit()
            return RowResult(RowOutcome.IMPORTED, row.number)
        except Exception as e:
            await self.session.rollback()
            logger.warning(f"Row {row.number} of batch {batch_id} failed: {e}")
            return RowResult(RowOutcome.ERROR, row.number, str(e) or e.__class__.__name__, row.as_dict())

    async def _finalize(
        self,
        batch_id: UUID,
        tally: BatchTally,
        data: SheetData,
        aborted: Optional[str] = None,
    ) -> ImportBatch:
        """Move the batch to its terminal status."""
        if aborted is not None:
            await self.session.rollback()

        remaining = data.total_rows - tally.processed
        if remaining > 0:
            first_unprocessed = data.header_row + 1 + tally.processed
            tally.abort_remaining(first_unprocessed, remaining, aborted or "unknown error")

        if aborted is not None or (data.total_rows > 0 and tally.errors == data.total_rows):
            status = ImportBatchStatus.FAILED
        else:
            status = ImportBatchStatus.COMPLETED

        batch = await self.session.get(ImportBatch, batch_id, populate_existing=True)
        batch.finish(
            status,
            imported=tally.imported,
            skipped=tally.skipped,
            errors=tally.errors,
            error_details=tally.error_records[:MAX_STORED_ERRORS],
            completed_at=self._clock(),
        )
        await self.session.commit()
        return batch

    # ------------------------------------------------------------------
    # Batch ledger
    # ------------------------------------------------------------------

    async def list_batches(self, tenant_id: UUID, limit: int = DEFAULT_BATCH_LIMIT) -> List[ImportBatchSummary]:
        limit = max(1, min(limit, MAX_BATCH_LIMIT))
        stmt = (
            select(ImportBatch)
            .where(ImportBatch.tenant_id == tenant_id)
            .order_by(ImportBatch.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [ImportBatchSummary.model_validate(b) for b in result.scalars().all()]

    async def _get_batch(self, tenant_id: UUID, batch_id: UUID) -> ImportBatch:
        stmt = select(ImportBatch).where(
            ImportBatch.id == batch_id, ImportBatch.tenant_id == tenant_id
        )
        result = await self.session.execute(stmt)
        batch = result.scalar_one_or_none()
        if batch is None:
            raise NotFoundError("Import batch not found")
        return batch

    async def get_batch(self, tenant_id: UUID, batch_id: UUID) -> ImportBatchSummary:
        return ImportBatchSummary.model_validate(await self._get_batch(tenant_id, batch_id))

    async def get_batch_errors(self, tenant_id: UUID, batch_id: UUID) -> List[ImportRowError]:
        batch = await self._get_batch(tenant_id, batch_id)
        return [ImportRowError(**record) for record in batch.error_details or []]
