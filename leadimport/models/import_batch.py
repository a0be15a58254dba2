from __future__ import annotations

import datetime as dt
import enum
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Uuid

from leadimport.db import Base, utcnow


class ImportBatchStatus(str, enum.Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"


class DuplicateStrategy(str, enum.Enum):
    SKIP = "Skip"
    UPDATE = "Update"
    CREATE = "Create"


TERMINAL_STATUSES = (ImportBatchStatus.COMPLETED.value, ImportBatchStatus.FAILED.value)


class ImportBatch(Base):
    """Ledger entry for one execution of the import pipeline."""

    __tablename__ = "import_batches"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False)
    user_id = Column(String(255), nullable=False)

    source_type = Column(String(50), nullable=False, default="GoogleSheets")  # GoogleSheets, CSV, Manual
    source_id = Column(String(255), nullable=True)
    source_name = Column(String(500), nullable=True)

    status = Column(String(20), nullable=False, default=ImportBatchStatus.PENDING.value)
    total_rows = Column(Integer, nullable=False, default=0)
    imported_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    error_details = Column(JSON, nullable=True)  # list of {row, error, data}

    column_mapping = Column(JSON, nullable=True)
    duplicate_strategy = Column(String(20), nullable=False, default=DuplicateStrategy.SKIP.value)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_import_batches_tenant_created", "tenant_id", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def finish(
        self,
        status: ImportBatchStatus,
        imported: int,
        skipped: int,
        errors: int,
        error_details: Optional[List[Dict[str, Any]]],
        completed_at: Optional[dt.datetime] = None,
    ) -> None:
        """Move the batch to a terminal status. Terminal batches never change again."""
        if self.is_terminal:
            raise RuntimeError(f"Import batch {self.id} is already {self.status}")
        if status.value not in TERMINAL_STATUSES:
            raise ValueError(f"{status.value} is not a terminal status")
        if imported + skipped + errors != self.total_rows:
            raise ValueError(
                f"Row accounting mismatch for batch {self.id}: "
                f"{imported}+{skipped}+{errors} != {self.total_rows}"
            )
        self.status = status.value
        self.imported_count = imported
        self.skipped_count = skipped
        self.error_count = errors
        self.error_details = error_details or None
        self.completed_at = completed_at or utcnow()
