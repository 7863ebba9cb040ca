from decimal import Decimal

from pydantic import BaseModel, Field, StrictStr


class CheckoutRequest(BaseModel):
    amount: Decimal
    product_info: str = ""
    buyer_name: str = ""
    buyer_email: str = ""
    buyer_phone: str | None = None
    success_url: str | None = None
    failure_url: str | None = None
    custom_fields: dict[str, str] = Field(default_factory=dict)
    txnid: StrictStr | None = Field(default=None, min_length=1, max_length=64)
    order_id: str | None = Field(default=None, max_length=64)


class CheckoutResponse(BaseModel):
    txnid: str
    endpoint: str
    fields: dict[str, str]


class PaymentStatusResponse(BaseModel):
    txnid: str
    order_id: str | None
    amount: str
    status: str
    gateway_payment_id: str | None


class RefundRequest(BaseModel):
    token: str | None = Field(default=None, max_length=64)
