"""
Request-scoped dependencies: buyer identity, admin guard, service factories.

Authentication happens upstream; the proxy forwards the resolved identity in
X-User-Id / X-Username / X-User-Email headers.
"""
import hmac
import logging

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from cardshop.core.config import Settings, get_settings
from cardshop.db.session import get_db
from cardshop.services.fulfillment.service import FulfillmentService
from cardshop.services.orders.admin import AdminOrderService
from cardshop.services.orders.service import OrderService
from cardshop.services.results import Buyer
from cardshop.services.webhooks.service import WebhookService

logger = logging.getLogger("auth")


def get_buyer(
    x_user_id: str | None = Header(default=None),
    x_username: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
) -> Buyer:
    return Buyer(user_id=x_user_id or None, username=x_username or None, email=x_user_email or None)


def require_admin(
    x_admin_key: str | None = Header(default=None),
    x_username: str | None = Header(default=None),
    config: Settings = Depends(get_settings),
) -> str:
    """Shared key plus allowlisted username. Returns the admin username for the audit log."""
    expected = config.admin_api_key
    if not expected or not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        logger.warning("admin_key_rejected", extra={"user_id": x_username})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
    allowlist = {name.lower() for name in config.admin_usernames_list}
    if not x_username or x_username.lower() not in allowlist:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not an admin")
    return x_username


def get_order_service(db: Session = Depends(get_db), config: Settings = Depends(get_settings)) -> OrderService:
    return OrderService(db, config=config)


def get_admin_order_service(
    admin: str = Depends(require_admin),
    db: Session = Depends(get_db),
    config: Settings = Depends(get_settings),
) -> AdminOrderService:
    return AdminOrderService(db, config=config, actor=admin)


def get_webhook_service(db: Session = Depends(get_db), config: Settings = Depends(get_settings)) -> WebhookService:
    return WebhookService(db, config=config, fulfillment=FulfillmentService(db, config=config))
