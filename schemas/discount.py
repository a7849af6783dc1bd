from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored datetimes are naive UTC
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class DiscountCreate(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    type: Literal["percentage", "fixed"]
    value: float = Field(gt=0)
    max_discount: Optional[float] = Field(default=None, ge=0)
    min_purchase: float = Field(default=0, ge=0)
    start_date: datetime
    end_date: datetime
    usage_limit: Optional[int] = Field(default=None, ge=0)
    is_active: bool = True

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, value):
        return _naive_utc(value)


class DiscountUpdate(BaseModel):
    type: Optional[Literal["percentage", "fixed"]] = None
    value: Optional[float] = Field(default=None, gt=0)
    max_discount: Optional[float] = Field(default=None, ge=0)
    min_purchase: Optional[float] = Field(default=None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, value):
        return _naive_utc(value)


class DiscountOut(BaseModel):
    id: int
    code: str
    type: str
    value: float
    max_discount: Optional[float] = None
    min_purchase: float
    start_date: datetime
    end_date: datetime
    usage_limit: Optional[int] = None
    used_count: int
    remaining_uses: Optional[int] = None
    is_active: bool

    class Config:
        from_attributes = True


class DiscountValidateRequest(BaseModel):
    code: str
    subtotal: float = Field(ge=0)


class DiscountQuoteOut(BaseModel):
    code: str
    type: str
    value: float
    discount_amount: float
