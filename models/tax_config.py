from datetime import datetime
from sqlalchemy import String, DateTime, Numeric, Boolean, JSON
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base


class TaxConfig(Base):
    __tablename__ = "tax_configs"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    rate: Mapped[float] = mapped_column(Numeric(6, 4))  # fraction, 0.16 == 16%
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    applicable_regions: Mapped[list | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
