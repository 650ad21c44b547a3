"""Input models for the inventory tools.

Each model is the single contract for its tool: the manifest derives the
model-facing parameter list from it, the registry validates arguments with it,
and the tool method receives the validated fields.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

StockStatus = Literal["in_stock", "low_stock", "out_of_stock", "ordered", "discontinued"]
MetricType = Literal["overview", "category_breakdown", "movement_summary", "top_movers"]


def _parse_instant(value: object, *, end_of_day: bool) -> object:
    """Accept ISO dates and datetimes (``Z`` suffix allowed), always returning UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid ISO date: {value!r}")
        if "T" not in text and " " not in text:
            # Bare date: the window covers the whole day
            parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
        value = parsed
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime.combine(value, time.max if end_of_day else time.min)
    if isinstance(value, datetime) and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class _ToolInput(BaseModel):
    """Scalar fields are strict; UUID and date fields accept their string forms."""

    model_config = ConfigDict(extra="forbid")


class SearchInventoryInput(_ToolInput):
    query: str | None = Field(
        default=None,
        strict=True,
        description=(
            'Search term: product name, SKU, keyword, or description text '
            '(e.g., "laptop", "ELEC-001", "ergonomic"). Omit to list all items '
            "matching the other filters."
        ),
    )
    category: str | None = Field(
        default=None,
        strict=True,
        description=(
            'Filter by category name (e.g., "Electronics", "Furniture"). '
            "Case-insensitive partial match."
        ),
    )
    status: StockStatus | None = Field(default=None, description="Filter by stock status")
    low_stock_only: bool | None = Field(
        default=None,
        strict=True,
        description=(
            "If true, only return items where quantity is at or below their "
            "min_stock_level threshold"
        ),
    )


class GetStockMovementsInput(_ToolInput):
    product_id: uuid.UUID = Field(description="UUID of the product to get movements for")
    start_date: datetime | None = Field(
        default=None,
        description=(
            'Start date in ISO format (e.g., "2026-01-01"). Defaults to 90 days '
            "ago if not provided."
        ),
    )
    end_date: datetime | None = Field(
        default=None,
        description=(
            'End date in ISO format (e.g., "2026-02-23"). Defaults to now if not provided.'
        ),
    )

    @field_validator("start_date", mode="before")
    @classmethod
    def _parse_start(cls, v: object) -> object:
        return _parse_instant(v, end_of_day=False)

    @field_validator("end_date", mode="before")
    @classmethod
    def _parse_end(cls, v: object) -> object:
        return _parse_instant(v, end_of_day=True)

    @model_validator(mode="after")
    def _check_window(self) -> GetStockMovementsInput:
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class GetLowStockItemsInput(_ToolInput):
    pass


class GetAnalyticsInput(_ToolInput):
    metric_type: MetricType = Field(
        description=(
            'Type of analytics: "overview" (total products, value, low stock count), '
            '"category_breakdown" (items and value per category), "movement_summary" '
            '(inbound/outbound totals for a period), "top_movers" (most active '
            "products by movement volume)"
        ),
    )
    period_days: int | None = Field(
        default=None,
        strict=True,
        ge=1,
        description="Number of days to look back for time-based metrics. Default 30.",
    )


class UpdateStockThresholdInput(_ToolInput):
    product_id: uuid.UUID = Field(description="UUID of the product to update")
    new_threshold: float = Field(
        ge=0,
        strict=True,
        allow_inf_nan=False,
        description=(
            "New minimum stock level (reorder point). Must be >= 0. Calculate based "
            "on: avg_daily_consumption * lead_time_days * (1 + safety_margin)"
        ),
    )
    reason: str = Field(
        min_length=1,
        strict=True,
        description=(
            "Detailed explanation of why this threshold was chosen, including the "
            "data and methodology used"
        ),
    )
