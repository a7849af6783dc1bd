from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.db import commit, get_db
from models.user import User
from schemas.cart import CartItemAdd, CartItemUpdate, CartOut
from schemas.order import CountOut
from security.dependencies import get_current_user
from services import cart as cart_service

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("/", response_model=CartOut)
def get_cart(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    cart = cart_service.get_or_create_cart(db, current_user.id)
    commit(db)
    return cart


@router.post("/", response_model=CartOut)
def add_to_cart(data: CartItemAdd, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return cart_service.add_item(db, current_user.id, data.product_id, data.quantity)


@router.get("/count", response_model=CountOut)
def cart_count(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"count": cart_service.item_count(db, current_user.id)}


@router.put("/{item_id}", response_model=CartOut)
def update_cart_item(
    item_id: int,
    data: CartItemUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return cart_service.update_item(db, current_user.id, item_id, data.quantity)


@router.delete("/{item_id}", response_model=CartOut)
def remove_cart_item(item_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return cart_service.remove_item(db, current_user.id, item_id)
