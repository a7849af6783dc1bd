from sqlalchemy import select
from sqlalchemy.orm import Session

from core.db import commit
from core.errors import NotFoundError, ValidationError
from models.cart import Cart, CartItem
from models.product import Product


def get_cart(db: Session, user_id: int) -> Cart | None:
    return db.execute(select(Cart).where(Cart.user_id == user_id)).scalar_one_or_none()


def get_or_create_cart(db: Session, user_id: int) -> Cart:
    cart = get_cart(db, user_id)
    if cart is None:
        cart = Cart(user_id=user_id)
        db.add(cart)
        db.flush()
    return cart


def add_item(db: Session, user_id: int, product_id: int, quantity: int = 1) -> Cart:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    product = db.get(Product, product_id)
    if product is None or not product.is_active:
        raise NotFoundError("Product not found")

    cart = get_or_create_cart(db, user_id)
    existing = next((item for item in cart.items if item.product_id == product_id), None)
    if existing:
        existing.quantity += quantity
    else:
        cart.items.append(CartItem(product_id=product_id, quantity=quantity))
    commit(db)
    db.refresh(cart)
    return cart


def _get_item(cart: Cart | None, item_id: int) -> CartItem:
    item = next((i for i in cart.items if i.id == item_id), None) if cart else None
    if item is None:
        raise NotFoundError("Item not found in cart")
    return item


def update_item(db: Session, user_id: int, item_id: int, quantity: int) -> Cart:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    cart = get_cart(db, user_id)
    _get_item(cart, item_id).quantity = quantity
    commit(db)
    db.refresh(cart)
    return cart


def remove_item(db: Session, user_id: int, item_id: int) -> Cart:
    cart = get_cart(db, user_id)
    item = _get_item(cart, item_id)
    cart.items.remove(item)
    commit(db)
    db.refresh(cart)
    return cart


def item_count(db: Session, user_id: int) -> int:
    cart = get_cart(db, user_id)
    return sum(item.quantity for item in cart.items) if cart else 0


def clear_cart(db: Session, user_id: int) -> bool:
    """Empty the cart in the current transaction. The caller commits.

    Returns True if anything was removed.
    """
    cart = get_cart(db, user_id)
    if cart is None or not cart.items:
        return False
    cart.items.clear()
    return True
