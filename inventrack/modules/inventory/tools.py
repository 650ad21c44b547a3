"""Inventory module tool implementations - catalogue queries and reorder points."""

from __future__ import annotations

import functools
import math
import uuid
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from inventrack.shared.auth import CallerIdentity
from inventrack.shared.config import Settings
from inventrack.shared.models import Category, Notification, Product, StockMovement
from inventrack.shared.permissions import can_write_inventory

logger = structlog.get_logger()

UNCATEGORIZED = "Uncategorized"
PERMISSION_DENIED = (
    "Permission denied. Only admins and managers can update stock thresholds."
)


def _captures_store_errors(method):
    """Turn store failures into an ``{"error": ...}`` result the model can read."""

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except SQLAlchemyError as e:
            logger.warning("inventory_store_error", tool=method.__name__, error=str(e))
            return {"error": f"Database error: {e.__class__.__name__}: {e}"}

    return wrapper


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: datetime | None) -> str | None:
    value = _as_utc(value)
    return value.isoformat() if value else None


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def round_threshold(value: float) -> int:
    """Round to the nearest whole unit, halves rounding up (17.5 -> 18)."""
    return int(math.floor(value + 0.5))


def derive_status(current: str, quantity: int, threshold: int) -> str:
    """Recompute a product's stock status after its quantity or threshold changed.

    ``ordered`` and ``discontinued`` are set by people, never derived.
    """
    if current in ("ordered", "discontinued"):
        return current
    if quantity <= 0:
        return "out_of_stock"
    if quantity <= threshold:
        return "low_stock"
    return "in_stock"


def _product_row(product: Product, category_name: str | None) -> dict:
    unit_price = float(product.unit_price or 0)
    return {
        "id": str(product.id),
        "name": product.name,
        "sku": product.sku,
        "description": product.description,
        "category": category_name or UNCATEGORIZED,
        "quantity": product.quantity,
        "min_stock_level": product.min_stock_level,
        "status": product.status,
        "unit_price": unit_price,
        "total_value": round(product.quantity * unit_price, 2),
    }


class InventoryTools:
    """Data access functions behind the inventory tools.

    Every method takes the validated tool arguments plus the authenticated
    ``caller`` and returns a plain dict. Store failures come back as
    ``{"error": ...}`` instead of raising.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    # ------------------------------------------------------------------
    # search_inventory
    # ------------------------------------------------------------------

    @_captures_store_errors
    async def search_inventory(
        self,
        caller: CallerIdentity,
        query: str | None = None,
        category: str | None = None,
        status: str | None = None,
        low_stock_only: bool | None = None,
    ) -> dict:
        """Case-insensitive search over name, SKU and description."""
        stmt = (
            select(Product, Category.name)
            .outerjoin(Category, Product.category_id == Category.id)
            .order_by(Product.name, Product.id)
            .limit(self.settings.search_page_size)
        )
        if query and query.strip():
            pattern = f"%{_escape_like(query.strip())}%"
            stmt = stmt.where(
                or_(
                    Product.name.ilike(pattern, escape="\\"),
                    Product.sku.ilike(pattern, escape="\\"),
                    Product.description.ilike(pattern, escape="\\"),
                )
            )
        if status:
            stmt = stmt.where(Product.status == status)
        if category and category.strip():
            stmt = stmt.where(
                Category.name.ilike(f"%{_escape_like(category.strip())}%", escape="\\")
            )
        if low_stock_only:
            stmt = stmt.where(Product.quantity <= Product.min_stock_level)

        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        products = [_product_row(product, cat_name) for product, cat_name in rows]
        return {"count": len(products), "products": products}

    # ------------------------------------------------------------------
    # get_stock_movements
    # ------------------------------------------------------------------

    @_captures_store_errors
    async def get_stock_movements(
        self,
        caller: CallerIdentity,
        product_id: uuid.UUID,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> dict:
        """Movement history for one product plus consumption aggregates."""
        end = _as_utc(end_date) or datetime.now(timezone.utc)
        start = _as_utc(start_date) or end - timedelta(days=self.settings.movement_window_days)
        days = max(1, math.ceil((end - start).total_seconds() / 86400))

        async with self.session_factory() as session:
            product = await session.get(Product, product_id)
            if product is None:
                return {"error": f"Product not found: {product_id}"}
            result = await session.execute(
                select(StockMovement)
                .where(
                    StockMovement.product_id == product_id,
                    StockMovement.created_at >= start,
                    StockMovement.created_at <= end,
                )
                .order_by(StockMovement.created_at, StockMovement.id)
            )
            movements = result.scalars().all()

        total_inbound = sum(m.quantity_change for m in movements if m.movement_type == "inbound")
        total_outbound = sum(
            abs(m.quantity_change) for m in movements if m.movement_type == "outbound"
        )
        total_adjustments = sum(
            m.quantity_change for m in movements if m.movement_type == "adjustment"
        )

        return {
            "product": {
                "id": str(product.id),
                "name": product.name,
                "sku": product.sku,
                "quantity": product.quantity,
                "min_stock_level": product.min_stock_level,
                "status": product.status,
                "unit_price": float(product.unit_price or 0),
            },
            "period": {"start": start.isoformat(), "end": end.isoformat(), "days": days},
            "summary": {
                "total_movements": len(movements),
                "total_inbound": total_inbound,
                "total_outbound": total_outbound,
                "total_adjustments": total_adjustments,
                "net_change": total_inbound - total_outbound,
                "avg_daily_outbound": round(total_outbound / days, 2),
                "avg_daily_inbound": round(total_inbound / days, 2),
            },
            "movements": [
                {
                    "date": _iso(m.created_at),
                    "type": m.movement_type,
                    "quantity": m.quantity_change,
                    "notes": m.notes,
                }
                for m in movements
            ],
        }

    # ------------------------------------------------------------------
    # get_low_stock_items
    # ------------------------------------------------------------------

    @_captures_store_errors
    async def get_low_stock_items(self, caller: CallerIdentity) -> dict:
        """Products at or below their reorder point, largest deficit first.

        Ties break on product name, then id, so the order is stable.
        """
        stmt = (
            select(Product, Category.name)
            .outerjoin(Category, Product.category_id == Category.id)
            .where(Product.quantity <= Product.min_stock_level)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        items = [
            {
                "id": str(p.id),
                "name": p.name,
                "sku": p.sku,
                "category": cat_name or UNCATEGORIZED,
                "quantity": p.quantity,
                "min_stock_level": p.min_stock_level,
                "deficit": p.min_stock_level - p.quantity,
                "unit_price": float(p.unit_price or 0),
                "status": p.status,
            }
            for p, cat_name in rows
        ]
        items.sort(key=lambda item: (-item["deficit"], item["name"], item["id"]))
        return {"count": len(items), "items": items}

    # ------------------------------------------------------------------
    # get_analytics
    # ------------------------------------------------------------------

    @_captures_store_errors
    async def get_analytics(
        self,
        caller: CallerIdentity,
        metric_type: str,
        period_days: int | None = None,
    ) -> dict:
        """Dispatch to one of the fixed analytics metrics."""
        handlers = {
            "overview": self._overview,
            "category_breakdown": self._category_breakdown,
            "movement_summary": self._movement_summary,
            "top_movers": self._top_movers,
        }
        handler = handlers.get(metric_type)
        if handler is None:
            return {"error": f"Unknown metric type: {metric_type}"}
        return await handler(period_days or self.settings.analytics_period_days)

    async def _overview(self, period_days: int) -> dict:
        value = func.coalesce(func.sum(Product.quantity * Product.unit_price), 0)
        low = func.coalesce(
            func.sum(case((Product.quantity <= Product.min_stock_level, 1), else_=0)), 0
        )
        out = func.coalesce(func.sum(case((Product.quantity <= 0, 1), else_=0)), 0)

        async with self.session_factory() as session:
            total_products, total_value, low_count, out_count = (
                await session.execute(select(func.count(Product.id), value, low, out))
            ).one()
            total_categories = await session.scalar(select(func.count(Category.id)))

        return {
            "metric": "overview",
            "data": {
                "total_products": int(total_products or 0),
                "low_stock_count": int(low_count or 0),
                "out_of_stock_count": int(out_count or 0),
                "total_value": round(float(total_value or 0), 2),
                "total_categories": int(total_categories or 0),
            },
        }

    async def _category_breakdown(self, period_days: int) -> dict:
        stmt = (
            select(
                Category.name,
                func.count(Product.id),
                func.coalesce(func.sum(Product.quantity), 0),
                func.coalesce(func.sum(Product.quantity * Product.unit_price), 0),
            )
            .select_from(Product)
            .outerjoin(Category, Product.category_id == Category.id)
            .group_by(Category.name)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        data = [
            {
                "category": name or UNCATEGORIZED,
                "items": int(items),
                "total_quantity": int(quantity),
                "total_value": round(float(value), 2),
            }
            for name, items, quantity, value in rows
        ]
        data.sort(key=lambda row: (-row["total_value"], row["category"]))
        return {"metric": "category_breakdown", "data": data}

    async def _movement_summary(self, period_days: int) -> dict:
        since = datetime.now(timezone.utc) - timedelta(days=period_days)
        stmt = (
            select(
                StockMovement.movement_type,
                func.count(StockMovement.id),
                func.coalesce(func.sum(StockMovement.quantity_change), 0),
                func.coalesce(func.sum(func.abs(StockMovement.quantity_change)), 0),
            )
            .where(StockMovement.created_at >= since)
            .group_by(StockMovement.movement_type)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        total_in = total_out = adjustments = count = 0
        for movement_type, n, signed, absolute in rows:
            count += int(n)
            if movement_type == "inbound":
                total_in += int(signed)
            elif movement_type == "outbound":
                total_out += int(absolute)
            else:
                adjustments += int(signed)

        return {
            "metric": "movement_summary",
            "period_days": period_days,
            "data": {
                "total_inbound": total_in,
                "total_outbound": total_out,
                "total_adjustments": adjustments,
                "net_change": total_in - total_out + adjustments,
                "total_movements": count,
            },
        }

    async def _top_movers(self, period_days: int) -> dict:
        since = datetime.now(timezone.utc) - timedelta(days=period_days)
        volume = func.sum(func.abs(StockMovement.quantity_change)).label("total_volume")
        stmt = (
            select(Product.id, Product.name, Product.sku, volume, func.count(StockMovement.id))
            .select_from(StockMovement)
            .join(Product, StockMovement.product_id == Product.id)
            .where(StockMovement.created_at >= since)
            .group_by(Product.id, Product.name, Product.sku)
            .order_by(volume.desc(), Product.name)
            .limit(self.settings.top_movers_limit)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        return {
            "metric": "top_movers",
            "period_days": period_days,
            "data": [
                {
                    "product_id": str(pid),
                    "name": name,
                    "sku": sku,
                    "total_volume": int(total),
                    "movements": int(n),
                }
                for pid, name, sku, total, n in rows
            ],
        }

    # ------------------------------------------------------------------
    # update_stock_threshold
    # ------------------------------------------------------------------

    @_captures_store_errors
    async def update_stock_threshold(
        self,
        caller: CallerIdentity,
        product_id: uuid.UUID,
        new_threshold: float,
        reason: str,
    ) -> dict:
        """Set a product's reorder point. Admins and managers only."""
        if not can_write_inventory(caller.role):
            logger.warning(
                "threshold_update_denied",
                user_id=str(caller.user_id),
                role=caller.role.value,
                product_id=str(product_id),
            )
            return {"error": PERMISSION_DENIED}

        threshold = round_threshold(new_threshold)

        async with self.session_factory() as session:
            product = await session.get(Product, product_id)
            if product is None:
                return {"error": "Product not found"}

            previous = product.min_stock_level
            was_low = product.status == "low_stock"
            product.min_stock_level = threshold
            product.status = derive_status(product.status, product.quantity, threshold)

            if product.status == "low_stock" and not was_low:
                session.add(
                    Notification(
                        title="Low stock alert",
                        message=(
                            f"{product.name} ({product.sku}) is at or below its reorder "
                            f"point: {product.quantity} on hand, threshold {threshold}."
                        ),
                        type="low_stock",
                        product_id=product.id,
                    )
                )
            await session.commit()

            snapshot = {
                "id": str(product.id),
                "name": product.name,
                "sku": product.sku,
                "min_stock_level": product.min_stock_level,
                "quantity": product.quantity,
                "status": product.status,
            }

        logger.info(
            "threshold_updated",
            user_id=str(caller.user_id),
            product_id=str(product_id),
            previous=previous,
            new=threshold,
        )
        return {
            "success": True,
            "product": snapshot,
            "previous_threshold": previous,
            "new_threshold": threshold,
            "reason": reason,
        }
