from sqlalchemy import select
from sqlalchemy.orm import Session as DBSession

from cardshop.models.audit_log import AuditLog
from cardshop.models.order import Order


class AuditService:
    """Append-only trail of admin order actions."""

    def __init__(self, db: DBSession) -> None:
        self.db = db

    def record(self, actor: str | None, action: str, order_id: str, payload: dict | None = None) -> AuditLog:
        # Deleted orders have no row left; their status is recorded as None.
        status = self.db.execute(select(Order.status).where(Order.order_id == order_id)).scalar_one_or_none()
        entry = AuditLog(
            actor=actor,
            action=action,
            order_id=order_id,
            order_status=status,
            payload=payload or {},
        )
        self.db.add(entry)
        self.db.commit()
        return entry

    def history(self, order_id: str) -> list[AuditLog]:
        return list(
            self.db.execute(
                select(AuditLog).where(AuditLog.order_id == order_id).order_by(AuditLog.id)
            ).scalars()
        )
