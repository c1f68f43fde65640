from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CheckoutIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    product_id: str
    quantity: int = 1
    use_points: bool = False
    email: str | None = None

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_to_none(cls, v: Any) -> str | None:
        if isinstance(v, str):
            v = v.strip()
        return v or None


class PaymentOrderIn(BaseModel):
    amount: str | float
    payee: str | None = None


class PaymentRequestOut(BaseModel):
    url: str
    params: dict[str, str]


class CheckoutOut(BaseModel):
    success: bool
    error: str | None = None
    order_id: str | None = None
    is_zero_price: bool = False
    payment: PaymentRequestOut | None = None
    order_url: str | None = None


class StatusCheckOut(BaseModel):
    success: bool
    status: str | None = None
    error: str | None = None


class ActionOut(BaseModel):
    success: bool
    error: str | None = None
    message: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class BulkDeleteIn(BaseModel):
    order_ids: list[str] = Field(default_factory=list, max_length=500)
