"""Wire the inventory tools into a tool registry."""

from __future__ import annotations

from typing import TYPE_CHECKING

from inventrack.modules.inventory.manifest import INPUT_MODELS, MANIFEST
from inventrack.modules.inventory.tools import InventoryTools

if TYPE_CHECKING:
    from inventrack.core.orchestrator.tool_registry import ToolRegistry


def build_handlers(tools: InventoryTools) -> dict:
    """Map each tool name to the bound method that executes it."""
    return {
        "search_inventory": tools.search_inventory,
        "get_stock_movements": tools.get_stock_movements,
        "get_low_stock_items": tools.get_low_stock_items,
        "get_analytics": tools.get_analytics,
        "update_stock_threshold": tools.update_stock_threshold,
    }


def register_inventory_tools(registry: ToolRegistry, tools: InventoryTools) -> None:
    registry.register_module(MANIFEST, INPUT_MODELS, build_handlers(tools))
