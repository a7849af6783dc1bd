"""Payment initiation and reconciliation.

Pushed notifications and status polls both end in ``reconcile``. The move
to ``completed`` is a compare-and-swap on the order row, so duplicate or
concurrent reports of the same payment apply their side effects once.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from core.config import settings
from core.db import commit
from core.errors import ConflictError, NotFoundError, ValidationError
from models.order import Order, OrderStatus, PaymentMethod, PaymentStatus
from models.payment import Payment
from services import cart as cart_service
from services.pricing import to_decimal

logger = structlog.get_logger()

# Pesapal payment_status_description values. INVALID is what the gateway
# reports for a transaction the buyer has not paid yet.
GATEWAY_STATUS_MAP = {
    "COMPLETED": PaymentStatus.COMPLETED,
    "FAILED": PaymentStatus.FAILED,
    "REVERSED": PaymentStatus.FAILED,
    "INVALID": PaymentStatus.PENDING,
    "PENDING": PaymentStatus.PENDING,
}


def map_gateway_status(raw_status: str | None) -> PaymentStatus:
    return GATEWAY_STATUS_MAP.get((raw_status or "").strip().upper(), PaymentStatus.PENDING)


@dataclass(frozen=True)
class PaymentInitiation:
    order_id: int
    tracking_id: str
    redirect_url: str
    merchant_reference: str


@dataclass(frozen=True)
class ReconcileResult:
    order_id: int
    tracking_id: str
    payment_status: str
    gateway_status: str
    applied: bool


def _billing_address(order: Order) -> Dict[str, Any]:
    buyer = order.user
    delivery_point = order.delivery_point or {}
    return {
        "email_address": buyer.email,
        "phone_number": buyer.phone,
        "country_code": settings.COUNTRY_CODE,
        "first_name": buyer.first_name,
        "middle_name": "",
        "last_name": buyer.last_name,
        "line_1": delivery_point.get("location") or "",
        "line_2": "",
        "city": "",
        "state": buyer.region or "",
        "postal_code": "",
        "zip_code": "",
    }


def initiate_payment(db: Session, order: Order, gateway) -> PaymentInitiation:
    """Start a gateway transaction for ``order`` and record its tracking id.

    The order is already persisted, so a gateway failure here leaves it
    untouched and the buyer can simply try again.
    """
    if order.status == OrderStatus.CANCELLED.value:
        raise ConflictError("Cannot pay for a cancelled order")
    if order.payment_status == PaymentStatus.COMPLETED.value:
        raise ConflictError("Order is already paid")
    if order.payment_method != PaymentMethod.PESAPAL.value:
        raise ValidationError(f"Payment method '{order.payment_method}' cannot be started online")
    if to_decimal(order.total) <= 0:
        raise ValidationError("Order total must be greater than 0")

    merchant_reference = f"ORD{order.id}-{uuid.uuid4().hex[:12]}"
    tx = gateway.create_transaction(
        merchant_reference=merchant_reference,
        amount=order.total,
        currency=order.currency,
        description=f"Order #{order.id}",
        callback_url=f"{settings.FRONTEND_URL.rstrip('/')}/orders/{order.id}",
        billing_address=_billing_address(order),
    )

    db.add(
        Payment(
            order_id=order.id,
            provider=getattr(gateway, "provider", "pesapal"),
            tracking_id=tx.tracking_id,
            merchant_reference=tx.merchant_reference,
            amount=order.total,
            currency=order.currency,
            status=PaymentStatus.PENDING.value,
            redirect_url=tx.redirect_url,
            raw_response=tx.raw,
        )
    )
    order.payment_tracking_id = tx.tracking_id
    order.payment_details = {
        **(order.payment_details or {}),
        "tracking_id": tx.tracking_id,
        "redirect_url": tx.redirect_url,
        "merchant_reference": tx.merchant_reference,
        "initiated_at": datetime.utcnow().isoformat(),
    }
    commit(db)
    logger.info("payment_initiated", order_id=order.id, tracking_id=tx.tracking_id)
    return PaymentInitiation(
        order_id=order.id,
        tracking_id=tx.tracking_id,
        redirect_url=tx.redirect_url,
        merchant_reference=tx.merchant_reference,
    )


def find_payment(db: Session, tracking_id: str) -> Payment:
    payment = db.execute(select(Payment).where(Payment.tracking_id == tracking_id)).scalar_one_or_none()
    if payment is None:
        logger.warning("payment_tracking_id_unknown", tracking_id=tracking_id)
        raise NotFoundError("No order matches this payment")
    return payment


def reconcile(db: Session, tracking_id: str, reported_status: str | None, raw_payload: Dict[str, Any] | None = None) -> ReconcileResult:
    payment = find_payment(db, tracking_id)
    order = db.get(Order, payment.order_id, populate_existing=True)
    mapped = map_gateway_status(reported_status)
    previous = order.payment_status

    def result(applied: bool) -> ReconcileResult:
        return ReconcileResult(
            order_id=order.id,
            tracking_id=tracking_id,
            payment_status=order.payment_status,
            gateway_status=reported_status or "",
            applied=applied,
        )

    if previous == PaymentStatus.COMPLETED.value:
        if mapped is PaymentStatus.COMPLETED:
            logger.info("payment_already_completed", order_id=order.id, tracking_id=tracking_id)
        else:
            logger.warning("payment_report_ignored", order_id=order.id, tracking_id=tracking_id, reported=reported_status)
        return result(False)

    now = datetime.utcnow()
    details = {
        **(order.payment_details or {}),
        "last_gateway_response": raw_payload or {},
        "last_checked_at": now.isoformat(),
    }
    values: Dict[str, Any] = {"payment_status": mapped.value}
    if mapped is PaymentStatus.COMPLETED:
        details["verified_at"] = now.isoformat()
        details["tracking_id"] = tracking_id
        values["payment_verified_at"] = now
    values["payment_details"] = details

    stmt = (
        update(Order)
        .where(Order.id == order.id, Order.payment_status != PaymentStatus.COMPLETED.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        # A concurrent report completed the order first
        db.rollback()
        db.refresh(order)
        logger.info("payment_already_completed", order_id=order.id, tracking_id=tracking_id)
        return result(False)

    if mapped is PaymentStatus.COMPLETED and order.status == OrderStatus.CANCELLED.value:
        # Money arrived after cancellation, stock is already restored
        logger.warning("payment_completed_for_cancelled_order", order_id=order.id, tracking_id=tracking_id, amount=str(order.total))

    payment.status = mapped.value
    payment.raw_response = raw_payload or {}
    cart_cleared = False
    if mapped is PaymentStatus.COMPLETED and order.from_cart:
        cart_cleared = cart_service.clear_cart(db, order.user_id)
    commit(db)
    db.refresh(order)

    logger.info(
        "payment_reconciled",
        order_id=order.id,
        tracking_id=tracking_id,
        previous=previous,
        payment_status=order.payment_status,
        cart_cleared=cart_cleared,
    )
    return result(previous != mapped.value)


def refresh_payment_status(db: Session, gateway, tracking_id: str) -> ReconcileResult:
    """Ask the gateway for the authoritative status and reconcile it.

    Shared by the push notification and the status-query endpoints.
    """
    find_payment(db, tracking_id)
    status = gateway.query_status(tracking_id)
    return reconcile(db, tracking_id, status.status, status.raw)
