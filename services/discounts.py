"""Discount ledger.

Validation reads the code; redemption is a single conditional UPDATE that
only succeeds while uses remain, so two checkouts racing for the last use
of a code cannot both win.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import structlog
from sqlalchemy import select, update, or_
from sqlalchemy.orm import Session

from core.config import settings
from core.errors import (
    DiscountBelowMinimumError,
    DiscountExhaustedError,
    DiscountExpiredError,
    DiscountInactiveError,
    DiscountNotFoundError,
)
from models.discount import Discount
from services.pricing import to_decimal

logger = structlog.get_logger()

PERCENTAGE = "percentage"
FIXED = "fixed"


@dataclass(frozen=True)
class DiscountQuote:
    discount_id: int
    code: str
    type: str
    value: Decimal
    amount: Decimal

    def as_details(self) -> dict:
        return {
            "code": self.code,
            "type": self.type,
            "value": str(self.value),
            "amount": str(self.amount),
        }


def normalize_code(code: str) -> str:
    return code.strip().upper()


def discount_amount_for(discount: Discount, subtotal: Decimal) -> Decimal:
    value = to_decimal(discount.value)
    if discount.type == PERCENTAGE:
        amount = subtotal * value / Decimal("100")
        if discount.max_discount is not None:
            amount = min(amount, to_decimal(discount.max_discount))
    else:
        amount = value
    return min(amount, subtotal)


def _load(db: Session, code: str) -> Discount:
    discount = db.execute(
        select(Discount).where(Discount.code == code).execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if discount is None:
        raise DiscountNotFoundError(code)
    return discount


def _check_redeemable(discount: Discount, subtotal: Decimal, now: datetime) -> None:
    if not discount.is_active:
        raise DiscountInactiveError(f"Discount code {discount.code} is not active")
    if now < discount.start_date:
        raise DiscountInactiveError(f"Discount code {discount.code} is not active yet")
    if now > discount.end_date:
        raise DiscountExpiredError(f"Discount code {discount.code} has expired")
    if subtotal < to_decimal(discount.min_purchase):
        raise DiscountBelowMinimumError(to_decimal(discount.min_purchase))
    if discount.usage_limit is not None and discount.used_count >= discount.usage_limit:
        raise DiscountExhaustedError(discount.code)


def quote_discount(db: Session, code: str, subtotal, now: datetime | None = None) -> DiscountQuote:
    """Validate a code against a subtotal without consuming a use."""
    now = now or datetime.utcnow()
    subtotal = to_decimal(subtotal)
    discount = _load(db, normalize_code(code))
    _check_redeemable(discount, subtotal, now)
    return DiscountQuote(
        discount_id=discount.id,
        code=discount.code,
        type=discount.type,
        value=to_decimal(discount.value),
        amount=discount_amount_for(discount, subtotal),
    )


def consume_use(db: Session, discount_id: int, now: datetime | None = None) -> bool:
    """Atomically record one redemption. False when the code was used up,
    deactivated or expired since it was read."""
    now = now or datetime.utcnow()
    stmt = (
        update(Discount)
        .where(
            Discount.id == discount_id,
            Discount.is_active.is_(True),
            Discount.start_date <= now,
            Discount.end_date >= now,
            or_(Discount.usage_limit.is_(None), Discount.used_count < Discount.usage_limit),
        )
        .values(used_count=Discount.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    return result.rowcount == 1


def release_use(db: Session, discount_id: int) -> None:
    """Give back a use taken by a checkout that did not complete."""
    stmt = (
        update(Discount)
        .where(Discount.id == discount_id, Discount.used_count > 0)
        .values(used_count=Discount.used_count - 1)
        .execution_options(synchronize_session=False)
    )
    db.execute(stmt)
    db.commit()
    logger.info("discount_use_released", discount_id=discount_id)


def validate_and_reserve(db: Session, code: str | None, subtotal, now: datetime | None = None) -> DiscountQuote | None:
    """Validate ``code`` and consume one use of it.

    Returns None when no code is given. Losing the redemption race causes
    a re-validation, which then reports the precise reason (usually
    exhaustion).
    """
    if not code or not code.strip():
        return None

    for attempt in range(1, settings.DISCOUNT_RESERVE_ATTEMPTS + 1):
        quote = quote_discount(db, code, subtotal, now)
        if consume_use(db, quote.discount_id, now):
            logger.info("discount_reserved", code=quote.code, amount=str(quote.amount))
            return quote
        logger.info("discount_reservation_lost_race", code=quote.code, attempt=attempt)

    quote_discount(db, code, subtotal, now)
    raise DiscountExhaustedError(normalize_code(code))
