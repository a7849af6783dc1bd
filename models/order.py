import enum
from datetime import datetime
from sqlalchemy import String, DateTime, ForeignKey, Numeric, Boolean, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    IN_TRANSIT = "in_transit"
    SHIPPED = "shipped"
    UNDER_CLEARANCE = "under_clearance"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, enum.Enum):
    PESAPAL = "pesapal"
    MPESA = "mpesa"
    BANK = "bank"


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), index=True)
    currency: Mapped[str] = mapped_column(String(3), default="KES")
    status: Mapped[str] = mapped_column(String(30), default=OrderStatus.PENDING.value, index=True)

    subtotal: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    discount_amount: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    discount_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    discount_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    tax_rate: Mapped[float] = mapped_column(Numeric(6, 4), default=0)
    tax_amount: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    shipping_cost: Mapped[float] = mapped_column(Numeric(12, 2), default=0)
    total: Mapped[float] = mapped_column(Numeric(12, 2), default=0)

    payment_method: Mapped[str] = mapped_column(String(30), default=PaymentMethod.PESAPAL.value)
    payment_status: Mapped[str] = mapped_column(String(30), default=PaymentStatus.PENDING.value, index=True)
    payment_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    payment_tracking_id: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    payment_verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Snapshot of the shipping zone at order time, never a live reference
    delivery_point_id: Mapped[int | None] = mapped_column(ForeignKey("shipping_zones.id", ondelete="SET NULL"), nullable=True)
    delivery_point: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    shipping_info: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    from_cart: Mapped[bool] = mapped_column(Boolean, default=False)
    viewed: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User")
    items = relationship("OrderItem", cascade="all, delete-orphan", back_populates="order", order_by="OrderItem.id")
    status_history = relationship(
        "OrderStatusHistory",
        cascade="all, delete-orphan",
        back_populates="order",
        order_by="OrderStatusHistory.id",
    )
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")
