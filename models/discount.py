from datetime import datetime
from sqlalchemy import String, DateTime, Integer, Numeric, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base


class Discount(Base):
    __tablename__ = "discounts"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, index=True)  # stored upper-cased
    type: Mapped[str] = mapped_column(String(20))  # percentage, fixed
    value: Mapped[float] = mapped_column(Numeric(12, 2))
    max_discount: Mapped[float | None] = mapped_column(Numeric(12, 2), nullable=True)
    min_purchase: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    start_date: Mapped[datetime] = mapped_column(DateTime)
    end_date: Mapped[datetime] = mapped_column(DateTime)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)  # None = unlimited
    used_count: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def remaining_uses(self) -> int | None:
        if self.usage_limit is None:
            return None
        return max(self.usage_limit - (self.used_count or 0), 0)
