from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class OrderCreate(BaseModel):
    delivery_point_id: int
    # Direct purchase when set, otherwise the buyer's cart is checked out
    product_id: Optional[int] = None
    quantity: Optional[int] = Field(default=None, ge=1)
    discount_code: Optional[str] = None
    payment_method: str = "pesapal"
    region: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: str
    note: Optional[str] = ""


class OrderCancel(BaseModel):
    reason: Optional[str] = None


class ShippingInfoUpdate(BaseModel):
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class MarkViewedRequest(BaseModel):
    order_ids: Optional[List[int]] = None


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    product_name: str
    quantity: int
    unit_price: float
    total: float

    class Config:
        from_attributes = True


class StatusHistoryOut(BaseModel):
    status: str
    note: str
    actor_id: Optional[int] = None
    timestamp: datetime

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    user_id: int
    currency: str
    status: str
    subtotal: float
    discount_amount: float
    discount_code: Optional[str] = None
    tax_rate: float
    tax_amount: float
    shipping_cost: float
    total: float
    payment_method: str
    payment_status: str
    payment_tracking_id: Optional[str] = None
    payment_details: Optional[Dict[str, Any]] = None
    delivery_point: Optional[Dict[str, Any]] = None
    shipping_info: Optional[Dict[str, Any]] = None
    viewed: bool
    created_at: datetime
    items: List[OrderItemOut]
    status_history: List[StatusHistoryOut]

    class Config:
        from_attributes = True


class AdminOrderOut(OrderOut):
    customer_email: Optional[str] = None
    profit: float


class AdminOrderList(BaseModel):
    orders: List[AdminOrderOut]
    total: int
    page: int
    pages: int


class CountOut(BaseModel):
    count: int
