from decimal import Decimal

from sqlalchemy.orm import Session

from core.errors import DeliveryPointNotFoundError
from models.shipping_zone import ShippingZone
from services.pricing import ZERO, to_decimal


def get_active_zone(db: Session, zone_id: int) -> ShippingZone:
    zone = db.get(ShippingZone, zone_id, populate_existing=True)
    if zone is None or not zone.is_active:
        raise DeliveryPointNotFoundError(zone_id)
    return zone


def shipping_cost_for(zone: ShippingZone, subtotal) -> Decimal:
    subtotal = to_decimal(subtotal)
    if zone.free_shipping_threshold is not None and subtotal >= to_decimal(zone.free_shipping_threshold):
        return ZERO
    return to_decimal(zone.base_rate)


def resolve_shipping_cost(db: Session, zone_id: int, subtotal) -> Decimal:
    return shipping_cost_for(get_active_zone(db, zone_id), subtotal)


def snapshot_zone(zone: ShippingZone) -> dict:
    """Value copy of a zone for storing on an order."""
    return {
        "id": zone.id,
        "name": zone.name,
        "location": zone.location,
        "description": zone.description,
        "operating_hours": zone.operating_hours,
        "contact_phone": zone.contact_phone,
        "contact_email": zone.contact_email,
        "base_rate": str(to_decimal(zone.base_rate)),
    }
