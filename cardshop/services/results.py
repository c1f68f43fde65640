"""Typed results returned by the order engine services."""
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ReservedCard:
    id: int
    card_key: str


@dataclass
class PaymentRequest:
    url: str
    params: dict[str, str]


@dataclass
class CheckoutResult:
    success: bool
    error: str | None = None
    order_id: str | None = None
    is_zero_price: bool = False
    payment: PaymentRequest | None = None
    order_url: str | None = None


@dataclass
class FulfillmentResult:
    success: bool
    status: str  # processed / already_processed
    order_status: str | None = None
    card_ids: list[int] = field(default_factory=list)


@dataclass
class StatusCheckResult:
    success: bool
    status: str | None = None
    error: str | None = None


@dataclass
class ActionResult:
    success: bool
    error: str | None = None
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class Buyer:
    """Identity of the caller as resolved by the upstream auth layer."""

    user_id: str | None = None
    username: str | None = None
    email: str | None = None
