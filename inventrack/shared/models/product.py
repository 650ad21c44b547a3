"""Product (stock keeping unit) model."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventrack.shared.models.base import Base

# Values of the products.status column
STOCK_STATUSES = ("in_stock", "low_stock", "out_of_stock", "ordered", "discontinued")


class Product(Base):
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200))
    sku: Mapped[str] = mapped_column(String(64), unique=True)
    description: Mapped[str | None] = mapped_column(default=None)
    category_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("categories.id"), default=None
    )
    unit_price: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), default=0)
    quantity: Mapped[int] = mapped_column(default=0)
    min_stock_level: Mapped[int] = mapped_column(default=0)
    status: Mapped[str] = mapped_column(String(20), default="in_stock")
    image_url: Mapped[str | None] = mapped_column(default=None)
    created_by: Mapped[uuid.UUID | None] = mapped_column(default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    category: Mapped[Category | None] = relationship(back_populates="products")
    movements: Mapped[list[StockMovement]] = relationship(
        back_populates="product", cascade="all, delete-orphan"
    )
