from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.db import commit, get_db
from core.errors import ConflictError, NotFoundError, ValidationError
from models.discount import Discount
from models.user import User
from schemas.discount import (
    DiscountCreate,
    DiscountOut,
    DiscountQuoteOut,
    DiscountUpdate,
    DiscountValidateRequest,
)
from security.dependencies import require_admin
from services import discounts as discount_service

router = APIRouter(prefix="/discounts", tags=["discounts"])


def _get_discount(db: Session, discount_id: int) -> Discount:
    discount = db.get(Discount, discount_id)
    if not discount:
        raise NotFoundError("Discount not found")
    return discount


def _check_window(start_date, end_date) -> None:
    if end_date <= start_date:
        raise ValidationError("end_date must be after start_date")


@router.get("/", response_model=List[DiscountOut])
def list_discounts(active: Optional[bool] = None, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    stmt = select(Discount).order_by(Discount.created_at.desc())
    if active is not None:
        stmt = stmt.where(Discount.is_active.is_(active))
    return db.execute(stmt).scalars().all()


@router.post("/", response_model=DiscountOut, status_code=201)
def create_discount(data: DiscountCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    _check_window(data.start_date, data.end_date)
    code = discount_service.normalize_code(data.code)
    if db.execute(select(Discount).where(Discount.code == code)).scalar_one_or_none():
        raise ConflictError("Discount code already exists")
    discount = Discount(**{**data.model_dump(), "code": code})
    db.add(discount)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("Discount code already exists")
    db.refresh(discount)
    return discount


@router.post("/validate", response_model=DiscountQuoteOut)
def validate_discount(data: DiscountValidateRequest, db: Session = Depends(get_db)):
    quote = discount_service.quote_discount(db, data.code, data.subtotal)
    return {"code": quote.code, "type": quote.type, "value": quote.value, "discount_amount": quote.amount}


@router.get("/{discount_id}", response_model=DiscountOut)
def get_discount(discount_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return _get_discount(db, discount_id)


@router.put("/{discount_id}", response_model=DiscountOut)
def update_discount(
    discount_id: int,
    data: DiscountUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    discount = _get_discount(db, discount_id)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(discount, field, value)
    _check_window(discount.start_date, discount.end_date)
    commit(db)
    db.refresh(discount)
    return discount


@router.delete("/{discount_id}", status_code=204)
def delete_discount(discount_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    db.delete(_get_discount(db, discount_id))
    commit(db)
