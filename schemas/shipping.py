from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class ShippingZoneCreate(BaseModel):
    name: str
    location: str
    description: Optional[str] = None
    base_rate: float = Field(ge=0)
    free_shipping_threshold: Optional[float] = Field(default=None, ge=0)
    is_active: bool = True
    operating_hours: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class ShippingZoneUpdate(BaseModel):
    name: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    base_rate: Optional[float] = Field(default=None, ge=0)
    free_shipping_threshold: Optional[float] = Field(default=None, ge=0)
    operating_hours: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class ShippingZoneOut(BaseModel):
    id: int
    name: str
    location: str
    description: Optional[str] = None
    base_rate: float
    free_shipping_threshold: Optional[float] = None
    is_active: bool
    operating_hours: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    class Config:
        from_attributes = True


class ShippingRateOut(BaseModel):
    delivery_point_id: int
    subtotal: float
    shipping_cost: float
    free_shipping: bool
