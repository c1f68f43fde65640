from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from cardshop.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    username = Column(String, nullable=True, index=True)
    email = Column(String, nullable=True)
    # Points balance: 1 point = 1 currency unit at checkout. Never negative.
    points = Column(Integer, nullable=False, default=0)
    is_blocked = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
