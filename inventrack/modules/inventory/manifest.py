"""Inventory module manifest - tool definitions."""

from inventrack.modules.inventory.schemas import (
    GetAnalyticsInput,
    GetLowStockItemsInput,
    GetStockMovementsInput,
    SearchInventoryInput,
    UpdateStockThresholdInput,
)
from inventrack.shared.schemas.tools import ModuleManifest, ToolDefinition, parameters_from_model

# The only tool that writes to the store
THRESHOLD_TOOL = "update_stock_threshold"

INPUT_MODELS = {
    "search_inventory": SearchInventoryInput,
    "get_stock_movements": GetStockMovementsInput,
    "get_low_stock_items": GetLowStockItemsInput,
    "get_analytics": GetAnalyticsInput,
    THRESHOLD_TOOL: UpdateStockThresholdInput,
}

MANIFEST = ModuleManifest(
    module_name="inventory",
    description=(
        "Read access to the product catalogue, stock movement ledger and "
        "dashboard analytics, plus reorder-point maintenance for privileged roles."
    ),
    tools=[
        ToolDefinition(
            name="search_inventory",
            description=(
                "Search inventory items by name, SKU, description, or category. "
                "Returns matching products with current stock levels, pricing, and status."
            ),
            parameters=parameters_from_model(SearchInventoryInput),
        ),
        ToolDefinition(
            name="get_stock_movements",
            description=(
                "Get stock movement history (inbound, outbound, adjustments) for a "
                "specific product over a date range. Essential for analyzing consumption "
                "rates, supply patterns, and demand trends before recommending stock "
                "thresholds."
            ),
            parameters=parameters_from_model(GetStockMovementsInput),
        ),
        ToolDefinition(
            name="get_low_stock_items",
            description=(
                "Get all products currently at or below their minimum stock threshold, "
                "sorted by urgency (largest deficit first). Returns product name, SKU, "
                "current quantity, threshold, deficit, category, and unit price."
            ),
            parameters=parameters_from_model(GetLowStockItemsInput),
        ),
        ToolDefinition(
            name="get_analytics",
            description=(
                "Get inventory analytics and metrics. Supports various metric types "
                "for comprehensive inventory analysis."
            ),
            parameters=parameters_from_model(GetAnalyticsInput),
        ),
        ToolDefinition(
            name=THRESHOLD_TOOL,
            description=(
                "Update the minimum stock level (reorder point) for a product. "
                "IMPORTANT: Always analyze stock movements first using "
                "get_stock_movements before recommending a threshold. Include your "
                "reasoning in the 'reason' parameter. Requires admin or manager role."
            ),
            parameters=parameters_from_model(UpdateStockThresholdInput),
            required_permission="manager",
            mutating=True,
        ),
    ],
)
