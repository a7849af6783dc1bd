"""Order aggregate: checkout, status machine and admin reads.

Checkout decrements stock first and then reserves the discount. Both are
committed conditional updates, so when a later step fails they are undone
by compensating updates rather than by a surrounding transaction.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from core.db import commit
from core.errors import (
    AuthorizationError,
    ConflictError,
    InsufficientStockError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    UpstreamGatewayError,
    ValidationError,
)
from models.order import Order, OrderStatus, PaymentMethod
from models.order_item import OrderItem
from models.order_status_history import OrderStatusHistory
from models.product import Product
from models.user import User
from services import cart as cart_service
from services import discounts, email, inventory, payments
from services.pricing import PricedLine, ZERO, compute_totals, money, subtotal_of, to_decimal
from services.shipping import get_active_zone, shipping_cost_for, snapshot_zone
from services.tax import resolve_tax_rate

logger = structlog.get_logger()

ORDER_FLOW = [
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.IN_TRANSIT,
    OrderStatus.SHIPPED,
    OrderStatus.UNDER_CLEARANCE,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
]
CANCELLABLE = {OrderStatus.PENDING, OrderStatus.PROCESSING}
TERMINAL = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}
STATUS_ALIASES = {"order_submitted": OrderStatus.PENDING.value}
NOTIFY_ON = {OrderStatus.SHIPPED, OrderStatus.DELIVERED}


def parse_status(value: str) -> OrderStatus:
    key = (value or "").strip().lower()
    try:
        return OrderStatus(STATUS_ALIASES.get(key, key))
    except ValueError:
        raise ValidationError("Invalid status value")


def can_transition(current: str, target: OrderStatus) -> bool:
    current = parse_status(current)
    if current in TERMINAL or current is target:
        return False
    if target is OrderStatus.CANCELLED:
        return current in CANCELLABLE
    return ORDER_FLOW.index(target) > ORDER_FLOW.index(current)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

def _collect_lines(
    db: Session, buyer: User, product_id: Optional[int], quantity: Optional[int]
) -> Tuple[List[Tuple[Product, int]], bool]:
    """Returns ``(product, quantity)`` pairs and whether they came from the cart."""
    if product_id is not None:
        quantity = 1 if quantity is None else quantity
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        return [(db.get(Product, product_id, populate_existing=True), quantity)], False

    cart = cart_service.get_cart(db, buyer.id)
    if cart is None or not cart.items:
        raise ValidationError("Cart is empty")
    lines = []
    for item in cart.items:
        lines.append((db.get(Product, item.product_id, populate_existing=True), item.quantity))
    return lines, True


def _check_lines(lines: List[Tuple[Product, int]]) -> None:
    for product, quantity in lines:
        if product is None or not product.is_active:
            raise NotFoundError("Product not found")
        if product.stock < quantity:
            raise InsufficientStockError(product.id, product.name, requested=quantity, available=product.stock)


def _compensate(db: Session, applied: List[Tuple[int, int]], quote) -> None:
    try:
        inventory.restore_all(db, applied)
        if quote is not None:
            discounts.release_use(db, quote.discount_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("checkout_compensation_failed", lines=applied, discount=quote.code if quote else None)
        return
    logger.warning("checkout_compensated", lines=applied, discount=quote.code if quote else None)


def create_order(
    db: Session,
    buyer: User,
    *,
    delivery_point_id: int,
    product_id: Optional[int] = None,
    quantity: Optional[int] = None,
    discount_code: Optional[str] = None,
    payment_method: str = PaymentMethod.PESAPAL.value,
    region: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Price, reserve and persist an order from a direct purchase or the
    buyer's cart. Either everything is applied or nothing is."""
    try:
        payment_method = PaymentMethod((payment_method or "").strip().lower()).value
    except ValueError:
        raise ValidationError("Invalid payment method")

    lines, from_cart = _collect_lines(db, buyer, product_id, quantity)
    _check_lines(lines)
    priced = [PricedLine(product.id, to_decimal(product.price), qty) for product, qty in lines]
    subtotal = subtotal_of(priced)

    # Read-only, fails before anything is reserved
    zone = get_active_zone(db, delivery_point_id)

    try:
        applied = inventory.decrement_all(db, [(p.product_id, p.quantity) for p in priced])
    except SQLAlchemyError as exc:
        logger.exception("order_persist_failed", buyer_id=buyer.id, step="stock")
        raise PersistenceError("Could not place the order, please retry") from exc
    quote = None
    try:
        quote = discounts.validate_and_reserve(db, discount_code, subtotal, now)
        tax_rate = resolve_tax_rate(db, region or buyer.region)
        totals = compute_totals(
            subtotal,
            discount_amount=quote.amount if quote else ZERO,
            tax_rate=tax_rate,
            shipping_cost=shipping_cost_for(zone, subtotal),
        ).rounded()

        order = Order(
            user_id=buyer.id,
            currency=settings.CURRENCY,
            status=OrderStatus.PENDING.value,
            subtotal=totals.subtotal,
            discount_amount=totals.discount_amount,
            discount_code=quote.code if quote else None,
            discount_details=quote.as_details() if quote else None,
            tax_rate=totals.tax_rate,
            tax_amount=totals.tax_amount,
            shipping_cost=totals.shipping_cost,
            total=totals.total,
            payment_method=payment_method,
            delivery_point_id=zone.id,
            delivery_point=snapshot_zone(zone),
            from_cart=from_cart,
        )
        for (product, qty), line in zip(lines, priced):
            order.items.append(
                OrderItem(
                    product_id=product.id,
                    product_name=product.name,
                    quantity=qty,
                    unit_price=money(line.unit_price),
                    buying_price=product.buying_price,
                    total=money(line.total),
                )
            )
        order.status_history.append(
            OrderStatusHistory(status=OrderStatus.PENDING.value, note="Order placed", actor_id=buyer.id)
        )
        db.add(order)
        if from_cart:
            cart_service.clear_cart(db, buyer.id)
        db.commit()
    except Exception as exc:
        db.rollback()
        _compensate(db, applied, quote)
        if isinstance(exc, SQLAlchemyError):
            logger.exception("order_persist_failed", buyer_id=buyer.id)
            raise PersistenceError("Could not place the order, please retry") from exc
        raise

    logger.info(
        "order_created",
        order_id=order.id,
        buyer_id=buyer.id,
        total=str(order.total),
        items=len(order.items),
        from_cart=from_cart,
        discount=order.discount_code,
    )
    return order


def place_order(db: Session, buyer: User, gateway, **fields) -> Order:
    """Checkout followed by payment initiation and the confirmation email.

    Neither of the follow-up steps can undo the order: a gateway failure
    leaves it payable through ``/payments/initiate``.
    """
    order = create_order(db, buyer, **fields)

    if order.payment_method == PaymentMethod.PESAPAL.value:
        if to_decimal(order.total) <= 0:
            # Nothing to collect; an admin confirms the order by hand
            logger.info("payment_not_required", order_id=order.id)
        else:
            try:
                payments.initiate_payment(db, order, gateway)
            except UpstreamGatewayError as exc:
                logger.warning("payment_initiation_failed", order_id=order.id, error=exc.message)

    _notify(order, email.send_order_confirmation)
    return order


# ---------------------------------------------------------------------------
# Status machine
# ---------------------------------------------------------------------------

def _swap_status(db: Session, order: Order, allowed: set, target: OrderStatus) -> None:
    stmt = (
        update(Order)
        .where(Order.id == order.id, Order.status.in_([s.value for s in allowed]))
        .values(status=target.value, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        db.rollback()
        raise ConflictError("Order status changed concurrently, please retry")


def transition_status(db: Session, order_id: int, target: str, actor_id: Optional[int], note: str = "") -> Order:
    target = parse_status(target)
    if target is OrderStatus.CANCELLED:
        return cancel_order(db, order_id, actor_id, note=note)

    order = get_order(db, order_id)
    current = order.status
    if not can_transition(current, target):
        raise InvalidTransitionError(current, target.value)

    _swap_status(db, order, {parse_status(current)}, target)
    order.status_history.append(OrderStatusHistory(status=target.value, note=note or "", actor_id=actor_id))
    commit(db)
    db.refresh(order)
    logger.info("order_status_changed", order_id=order.id, previous=current, status=order.status, actor_id=actor_id)

    if target in NOTIFY_ON:
        _notify(order, email.send_order_status_update)
    return order


def cancel_order(
    db: Session, order_id: int, actor_id: Optional[int], note: str = "", buyer_id: Optional[int] = None
) -> Order:
    """Cancel and put every line's stock back.

    ``buyer_id`` restricts the cancellation to the order's owner. The status
    swap only matches cancellable rows, so stock is restored at most once.
    """
    order = get_order(db, order_id)
    if buyer_id is not None and order.user_id != buyer_id:
        raise AuthorizationError("Unauthorized to cancel this order")
    if order.status == OrderStatus.CANCELLED.value:
        raise ConflictError("Order is already cancelled")
    if parse_status(order.status) not in CANCELLABLE:
        raise ConflictError("Cannot cancel order in current status")

    previous = order.status
    _swap_status(db, order, CANCELLABLE, OrderStatus.CANCELLED)
    order.status_history.append(
        OrderStatusHistory(status=OrderStatus.CANCELLED.value, note=note or "Order cancelled", actor_id=actor_id)
    )
    lines = [(item.product_id, item.quantity) for item in order.items]
    inventory.restore_all(db, lines, commit=False)
    commit(db)
    db.refresh(order)
    logger.info("order_cancelled", order_id=order.id, previous=previous, actor_id=actor_id, restored=lines)
    return order


def update_shipping_info(
    db: Session,
    order_id: int,
    actor_id: Optional[int],
    tracking_number: Optional[str] = None,
    carrier: Optional[str] = None,
    estimated_delivery: Optional[datetime] = None,
) -> Order:
    order = get_order(db, order_id)
    if order.status == OrderStatus.CANCELLED.value:
        raise ConflictError("Cannot ship a cancelled order")

    info = dict(order.shipping_info or {})
    if tracking_number is not None:
        info["tracking_number"] = tracking_number
    if carrier is not None:
        info["carrier"] = carrier
    if estimated_delivery is not None:
        info["estimated_delivery"] = estimated_delivery.isoformat()
    order.shipping_info = info
    commit(db)

    before_shipped = ORDER_FLOW.index(parse_status(order.status)) < ORDER_FLOW.index(OrderStatus.SHIPPED)
    if info.get("tracking_number") and before_shipped:
        note = f"Shipped via {info['carrier']}" if info.get("carrier") else "Shipped"
        return transition_status(db, order.id, OrderStatus.SHIPPED.value, actor_id, note=note)
    return order


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id, populate_existing=True)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def get_order_for_user(db: Session, order_id: int, user: User) -> Order:
    order = get_order(db, order_id)
    if order.user_id != user.id and not user.is_admin:
        raise AuthorizationError("Unauthorized to access this order")
    return order


def list_user_orders(db: Session, user_id: int) -> List[Order]:
    stmt = select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc(), Order.id.desc())
    return list(db.execute(stmt).scalars().all())


def list_all_orders(
    db: Session, status: Optional[str] = None, page: int = 1, limit: int = 20
) -> Tuple[List[Order], int]:
    """Admin listing. Returned orders are marked viewed afterwards; the
    returned objects still carry the flag as it was before the call."""
    if page < 1 or limit < 1 or limit > 100:
        raise ValidationError("page must be >= 1 and limit between 1 and 100")

    filters = []
    if status:
        filters.append(Order.status == parse_status(status).value)

    total = db.execute(select(func.count()).select_from(Order).where(*filters)).scalar_one()
    orders = list(
        db.execute(
            select(Order)
            .where(*filters)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).scalars().all()
    )

    unseen = [o.id for o in orders if not o.viewed]
    if unseen:
        mark_orders_viewed(db, unseen)
    return orders, total


def order_profit(order: Order) -> Decimal:
    cost = sum(
        (to_decimal(item.buying_price) * item.quantity for item in order.items),
        ZERO,
    )
    return money(to_decimal(order.total) - (cost + to_decimal(order.tax_amount) + to_decimal(order.shipping_cost)))


def count_new_orders(db: Session) -> int:
    return db.execute(select(func.count()).select_from(Order).where(Order.viewed.is_(False))).scalar_one()


def mark_orders_viewed(db: Session, order_ids: Optional[List[int]] = None) -> int:
    stmt = update(Order).where(Order.viewed.is_(False))
    if order_ids is not None:
        stmt = stmt.where(Order.id.in_(order_ids))
    result = db.execute(stmt.values(viewed=True).execution_options(synchronize_session=False))
    commit(db)
    return result.rowcount


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

def order_snapshot(order: Order) -> Dict[str, Any]:
    """Plain-data view of an order for templates and task payloads."""
    return {
        "id": order.id,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "currency": order.currency,
        "created_at": order.created_at.strftime("%Y-%m-%d %H:%M") if order.created_at else "",
        "items": [
            {
                "name": item.product_name,
                "quantity": item.quantity,
                "unit_price": f"{money(item.unit_price):,.2f}",
                "total": f"{money(item.total):,.2f}",
            }
            for item in order.items
        ],
        "subtotal": f"{money(order.subtotal):,.2f}",
        "discount_code": order.discount_code,
        "discount_amount": f"{money(order.discount_amount):,.2f}",
        "tax_amount": f"{money(order.tax_amount):,.2f}",
        "shipping_cost": f"{money(order.shipping_cost):,.2f}",
        "total": f"{money(order.total):,.2f}",
        "delivery_point": order.delivery_point,
        "shipping_info": order.shipping_info,
        "order_link": f"{settings.FRONTEND_URL.rstrip('/')}/orders/{order.id}",
    }


def _notify(order: Order, send) -> None:
    try:
        send(order.user.email, order_snapshot(order))
    except Exception:
        logger.exception("order_notification_failed", order_id=order.id, status=order.status)
