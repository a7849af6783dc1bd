from typing import List, Optional

from pydantic import BaseModel, Field


class TaxConfigCreate(BaseModel):
    name: str
    # Fraction of the taxable amount, 0.16 for 16%
    rate: float = Field(ge=0, le=1)
    is_default: bool = False
    applicable_regions: List[str] = []
    is_active: bool = True


class TaxConfigUpdate(BaseModel):
    name: Optional[str] = None
    rate: Optional[float] = Field(default=None, ge=0, le=1)
    is_default: Optional[bool] = None
    applicable_regions: Optional[List[str]] = None
    is_active: Optional[bool] = None


class TaxConfigOut(BaseModel):
    id: int
    name: str
    rate: float
    is_default: bool
    applicable_regions: Optional[List[str]] = None
    is_active: bool

    class Config:
        from_attributes = True
