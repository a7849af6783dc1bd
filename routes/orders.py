import math
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from core.db import get_db
from models.user import User
from schemas.order import (
    AdminOrderList,
    CountOut,
    MarkViewedRequest,
    OrderCancel,
    OrderCreate,
    OrderOut,
    OrderStatusUpdate,
    ShippingInfoUpdate,
)
from security.dependencies import get_current_user, require_admin
from services import orders as order_service
from services.pesapal import get_payment_gateway

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/", response_model=OrderOut, status_code=201)
def create_order(
    data: OrderCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway=Depends(get_payment_gateway),
):
    return order_service.place_order(db, current_user, gateway, **data.model_dump())


@router.get("/user-orders", response_model=List[OrderOut])
def list_user_orders(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return order_service.list_user_orders(db, current_user.id)


@router.get("/admin/all", response_model=AdminOrderList)
def list_all_orders(
    status: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    orders, total = order_service.list_all_orders(db, status=status, page=page, limit=limit)
    rows = []
    for order in orders:
        row = OrderOut.model_validate(order).model_dump()
        row["customer_email"] = order.user.email if order.user else None
        row["profit"] = float(order_service.order_profit(order))
        rows.append(row)
    return {"orders": rows, "total": total, "page": page, "pages": math.ceil(total / limit)}


@router.get("/new/count", response_model=CountOut)
def count_new_orders(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return {"count": order_service.count_new_orders(db)}


@router.post("/mark-viewed", response_model=CountOut)
def mark_orders_viewed(
    data: MarkViewedRequest | None = None,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    order_ids = data.order_ids if data else None
    return {"count": order_service.mark_orders_viewed(db, order_ids)}


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return order_service.get_order_for_user(db, order_id, current_user)


@router.patch("/{order_id}/status", response_model=OrderOut)
def update_status(
    order_id: int,
    data: OrderStatusUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return order_service.transition_status(db, order_id, data.status, admin.id, note=data.note or "")


@router.patch("/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: int,
    data: OrderCancel | None = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    note = (data.reason if data and data.reason else "Cancelled by customer")
    return order_service.cancel_order(db, order_id, current_user.id, note=note, buyer_id=current_user.id)


@router.patch("/{order_id}/shipping", response_model=OrderOut)
def update_shipping(
    order_id: int,
    data: ShippingInfoUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return order_service.update_shipping_info(db, order_id, admin.id, **data.model_dump())
