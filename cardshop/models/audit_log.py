"""Admin actions on orders, kept for after-the-fact review."""
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from cardshop.db.base import Base


class AuditLog(Base):
    __tablename__ = "order_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor = Column(String, nullable=True)  # admin username from the allowlist
    action = Column(String, nullable=False)  # mark_paid, cancel, delete, ...
    order_id = Column(String, nullable=False, index=True)
    order_status = Column(String, nullable=True)  # status after the action
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
