from typing import Optional

from pydantic import BaseModel


class PaymentInitRequest(BaseModel):
    order_id: int


class PaymentInitResponse(BaseModel):
    order_id: int
    tracking_id: str
    redirect_url: str
    merchant_reference: str


class PaymentStatusOut(BaseModel):
    order_id: int
    tracking_id: str
    payment_status: str
    gateway_status: str
    applied: bool


class IPNPayload(BaseModel):
    # Field names follow the gateway's notification body
    OrderTrackingId: Optional[str] = None
    OrderMerchantReference: Optional[str] = None
    OrderNotificationType: Optional[str] = None


class PaymentOut(BaseModel):
    id: int
    provider: str
    tracking_id: str
    merchant_reference: str
    amount: float
    currency: str
    status: str

    class Config:
        from_attributes = True
