"""SQLAlchemy models."""

from inventrack.shared.models.base import Base
from inventrack.shared.models.category import Category
from inventrack.shared.models.notification import Notification
from inventrack.shared.models.product import STOCK_STATUSES, Product
from inventrack.shared.models.profile import Profile
from inventrack.shared.models.stock_movement import MOVEMENT_TYPES, StockMovement

__all__ = [
    "Base",
    "Category",
    "MOVEMENT_TYPES",
    "Notification",
    "Product",
    "Profile",
    "STOCK_STATUSES",
    "StockMovement",
]
