"""Stock adjustments.

Every change is one conditional UPDATE against ``products.stock``; the
application never reads stock, computes a new value and writes it back.
"""
from typing import Iterable

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from core.errors import InsufficientStockError, NotFoundError, ValidationError
from models.product import Product

logger = structlog.get_logger()


def _check_quantity(quantity: int) -> None:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")


def decrement_stock(db: Session, product_id: int, quantity: int) -> None:
    _check_quantity(quantity)
    stmt = (
        update(Product)
        .where(Product.id == product_id, Product.stock >= quantity)
        .values(stock=Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    db.commit()
    if result.rowcount == 1:
        return

    product = db.get(Product, product_id, populate_existing=True)
    if product is None:
        raise NotFoundError("Product not found")
    raise InsufficientStockError(product.id, product.name, requested=quantity, available=product.stock)


def restore_stock(db: Session, product_id: int, quantity: int, commit: bool = True) -> None:
    """Add ``quantity`` back. With ``commit=False`` the change joins the
    caller's transaction."""
    _check_quantity(quantity)
    stmt = (
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    db.execute(stmt)
    if commit:
        db.commit()


def decrement_all(db: Session, lines: Iterable[tuple[int, int]]) -> list[tuple[int, int]]:
    """Decrement ``(product_id, quantity)`` pairs in order.

    All or nothing: if one decrement fails, the ones already applied are
    restored before the error propagates. Returns the applied pairs.
    """
    applied: list[tuple[int, int]] = []
    try:
        for product_id, quantity in lines:
            decrement_stock(db, product_id, quantity)
            applied.append((product_id, quantity))
    except Exception:
        db.rollback()
        restore_all(db, applied)
        if applied:
            logger.warning("stock_decrements_rolled_back", lines=applied)
        raise
    return applied


def restore_all(db: Session, lines: Iterable[tuple[int, int]], commit: bool = True) -> None:
    for product_id, quantity in reversed(list(lines)):
        restore_stock(db, product_id, quantity, commit=commit)
