from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from core.db import commit, get_db
from core.errors import NotFoundError
from models.shipping_zone import ShippingZone
from models.user import User
from schemas.shipping import ShippingRateOut, ShippingZoneCreate, ShippingZoneOut, ShippingZoneUpdate
from security.dependencies import require_admin
from services import shipping as shipping_service

router = APIRouter(prefix="/shipping", tags=["shipping"])


def _get_zone(db: Session, zone_id: int) -> ShippingZone:
    zone = db.get(ShippingZone, zone_id)
    if not zone:
        raise NotFoundError("Delivery point not found")
    return zone


@router.get("/", response_model=List[ShippingZoneOut])
def list_delivery_points(db: Session = Depends(get_db)):
    stmt = select(ShippingZone).where(ShippingZone.is_active.is_(True)).order_by(ShippingZone.name)
    return db.execute(stmt).scalars().all()


@router.get("/rate", response_model=ShippingRateOut)
def shipping_rate(delivery_point_id: int, subtotal: float = Query(ge=0), db: Session = Depends(get_db)):
    cost = shipping_service.resolve_shipping_cost(db, delivery_point_id, subtotal)
    return {
        "delivery_point_id": delivery_point_id,
        "subtotal": subtotal,
        "shipping_cost": cost,
        "free_shipping": cost == 0,
    }


@router.get("/{zone_id}", response_model=ShippingZoneOut)
def get_delivery_point(zone_id: int, db: Session = Depends(get_db)):
    return _get_zone(db, zone_id)


@router.post("/", response_model=ShippingZoneOut, status_code=201)
def create_delivery_point(data: ShippingZoneCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    zone = ShippingZone(**data.model_dump())
    db.add(zone)
    commit(db)
    db.refresh(zone)
    return zone


@router.put("/{zone_id}", response_model=ShippingZoneOut)
def update_delivery_point(
    zone_id: int,
    data: ShippingZoneUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    zone = _get_zone(db, zone_id)
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(zone, field, value)
    commit(db)
    db.refresh(zone)
    return zone


@router.patch("/{zone_id}/toggle", response_model=ShippingZoneOut)
def toggle_delivery_point(zone_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    zone = _get_zone(db, zone_id)
    zone.is_active = not zone.is_active
    commit(db)
    db.refresh(zone)
    return zone
