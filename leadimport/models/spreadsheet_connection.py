from __future__ import annotations

import uuid

from sqlalchemy import Column, DateTime, String, Text, UniqueConstraint, Uuid

from leadimport.db import Base, utcnow


class SpreadsheetConnection(Base):
    """Delegated Google account access for one (tenant, user) pair."""

    __tablename__ = "spreadsheet_connections"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(String(255), nullable=False)

    external_account_email = Column(String(320), nullable=False, default="unknown")
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=False, default="")
    token_expiry = Column(DateTime(timezone=True), nullable=False)
    granted_scopes = Column(String(255), nullable=False, default="")

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_spreadsheet_connections_tenant_user"),
    )
