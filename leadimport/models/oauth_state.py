from __future__ import annotations

from sqlalchemy import Column, DateTime, String, Uuid

from leadimport.db import Base, utcnow


class OAuthState(Base):
    """Pending authorization round trip, used when state storage is shared."""

    __tablename__ = "oauth_states"

    state = Column(String(128), primary_key=True)
    user_id = Column(String(255), nullable=False)
    tenant_id = Column(Uuid, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
