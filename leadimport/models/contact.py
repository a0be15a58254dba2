from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid

from leadimport.db import Base, utcnow
from leadimport.models import import_batch  # noqa: F401  (FK target table)

PLACEHOLDER_NAME = "Unknown"

CONTACT_SOURCES = ("Website", "Referral", "GoogleSheets", "Manual", "Advertisement", "Other")


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False)

    first_name = Column(String(255), nullable=False, default=PLACEHOLDER_NAME)
    last_name = Column(String(255), nullable=False, default=PLACEHOLDER_NAME)
    email = Column(String(320), nullable=False)
    phone = Column(String(100), nullable=True)
    company = Column(String(255), nullable=True)

    source = Column(String(50), nullable=False, default="GoogleSheets")
    status = Column(String(50), nullable=False, default="New")  # New, Contacted, Qualified, Converted, Lost
    score = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)

    # Import tracking
    import_batch_id = Column(Uuid, ForeignKey("import_batches.id"), nullable=True)
    import_source_id = Column(String(255), nullable=True)  # spreadsheet id

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Duplicate lookups go through (tenant_id, email); not unique on purpose
    __table_args__ = (
        Index("ix_contacts_tenant_email", "tenant_id", "email"),
        Index("ix_contacts_import_batch", "import_batch_id"),
    )
