"""Stock movement ledger model."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventrack.shared.models.base import Base

# Values of the stock_movements.movement_type column
MOVEMENT_TYPES = ("inbound", "outbound", "adjustment")


class StockMovement(Base):
    __tablename__ = "stock_movements"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("products.id", ondelete="CASCADE")
    )
    # Signed: positive for inbound, negative for outbound, either for adjustments
    quantity_change: Mapped[int]
    movement_type: Mapped[str] = mapped_column(String(20))
    notes: Mapped[str | None] = mapped_column(default=None)
    created_by: Mapped[uuid.UUID | None] = mapped_column(default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    product: Mapped[Product] = relationship(back_populates="movements")

    __table_args__ = (
        Index("ix_stock_movements_product_created", "product_id", "created_at"),
    )
