"""Prompt builder - system instructions and model-facing message history."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone

import structlog

from inventrack.shared.config import Settings
from inventrack.shared.permissions import Role, can_write_inventory, normalize_role
from inventrack.shared.schemas.messages import ChatMessage, TextPart, ToolCallPart, ToolResultPart
from inventrack.shared.schemas.tools import ToolDefinition

logger = structlog.get_logger()


def _summary(description: str) -> str:
    """First sentence of a tool description."""
    head, sep, _ = description.partition(". ")
    return head + "." if sep else description


class PromptBuilder:
    """Builds the system prompt for a role and flattens conversations for the router."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def build_system_prompt(
        self,
        role: Role | str,
        tools: list[ToolDefinition],
        restricted_tools: list[str] | None = None,
        today: date | None = None,
    ) -> str:
        """Render the instructions for one role.

        ``tools`` must be exactly the tool set handed to the model, and
        ``restricted_tools`` the write tools withheld from this role. The
        output depends only on these arguments.
        """
        role = normalize_role(role)
        today = today or datetime.now(timezone.utc).date()
        restricted_tools = restricted_tools or []
        writer = can_write_inventory(role)
        lead_time = self.settings.lead_time_days_hint

        tool_lines = "\n".join(f"- **{t.name}**: {_summary(t.description)}" for t in tools)
        names = ", ".join(t.name for t in tools) or "none"

        sections = [
            "You are InvenTrack AI, an intelligent inventory management assistant. "
            "You help warehouse managers and inventory teams understand their stock "
            "levels, identify issues, and make data-driven decisions.",
            f"## Your Role\nThe current user's role is **{role.value}**. "
            f"Exactly these tools are available to you: {names}.",
            f"## Your Tools\n{tool_lines}",
            "## Behavioral Guidelines\n\n"
            "### When analyzing stock levels:\n"
            "1. Always call get_stock_movements FIRST to get historical data before "
            "making any threshold recommendation\n"
            "2. Calculate average daily consumption rate from outbound movements\n"
            "3. Consider seasonality and trends in the data\n"
            f"4. Factor in lead time (assume {lead_time} business days unless told otherwise)",
            "### When recommending thresholds:\n"
            "1. Use the formula: threshold = avg_daily_consumption × lead_time_days × "
            "(1 + safety_margin)\n"
            "2. Safety margin should be 20-30% for standard items, 40-50% for critical items\n"
            "3. Always explain your calculation methodology\n"
            '4. Show the math: "Average daily usage: X units/day × Y lead time days × '
            '1.3 safety = Z threshold"',
        ]

        if writer:
            sections.append(
                "### Applying thresholds:\n"
                "Only call update_stock_threshold AFTER explaining your calculation and "
                "getting implicit agreement. Put the data and methodology in the 'reason' "
                "parameter."
            )
        else:
            withheld = ", ".join(restricted_tools) or "update_stock_threshold"
            sections.append(
                "### Read-only access:\n"
                f"The {role.value} role is read-only. Never call or attempt to call "
                f"{withheld}. When a change is needed, share your recommendation and ask "
                "the user to have an admin or manager apply it."
            )

        sections.append(
            "### Communication style:\n"
            "- Be concise but thorough\n"
            "- Use numbers and data to support recommendations\n"
            "- Format responses with markdown for readability\n"
            "- Highlight critical items that need immediate attention\n"
            "- When listing products, use tables when there are more than 3 items"
        )
        sections.append(
            "### Important:\n"
            "- You CANNOT create, edit, or delete products; direct users to the "
            "Inventory page for that\n"
            "- Always be specific about which product you're referring to (include "
            "name AND SKU)\n"
            "- If a query is ambiguous, search first, then ask for clarification if needed\n"
            f"- Today's date is {today.isoformat()}"
        )
        return "\n\n".join(sections) + "\n"

    def render_tool_result(self, part: ToolResultPart) -> str:
        """Serialize a tool result for the model, truncated to the configured size."""
        if part.success:
            content = json.dumps(part.result, default=str)
        else:
            content = f"Error: {part.error}"
        limit = self.settings.tool_result_max_chars
        if len(content) > limit:
            content = content[:limit] + "\n... [truncated]"
        return content

    def build_messages(self, system_prompt: str, conversation: list[ChatMessage]) -> list[dict]:
        """Flatten the conversation into the router's internal message format."""
        messages: list[dict] = [{"role": "system", "content": system_prompt}]
        for message in conversation:
            for part in message.parts:
                if isinstance(part, TextPart):
                    if part.text:
                        messages.append({"role": message.role, "content": part.text})
                elif isinstance(part, ToolCallPart):
                    messages.append({
                        "role": "tool_call",
                        "name": part.tool_name,
                        "arguments": part.arguments,
                        "tool_use_id": part.tool_use_id,
                    })
                elif isinstance(part, ToolResultPart):
                    messages.append({
                        "role": "tool_result",
                        "name": part.tool_name,
                        "content": self.render_tool_result(part),
                        "tool_use_id": part.tool_use_id,
                    })
        return self._sanitize_tool_pairs(messages)

    @staticmethod
    def _sanitize_tool_pairs(messages: list[dict]) -> list[dict]:
        """Remove tool_call/tool_result messages that lack a matching partner.

        All LLM providers require that every tool_result references a
        tool_use_id from a preceding tool_call message. Client-edited
        histories can split a pair apart, so unmatched messages are dropped.
        """
        call_ids = {
            msg.get("tool_use_id") for msg in messages
            if msg.get("role") == "tool_call" and msg.get("tool_use_id")
        }
        result_ids = {
            msg.get("tool_use_id") for msg in messages
            if msg.get("role") == "tool_result" and msg.get("tool_use_id")
        }

        orphan_result_ids = result_ids - call_ids
        orphan_call_ids = call_ids - result_ids

        if not orphan_result_ids and not orphan_call_ids:
            return messages

        logger.warning(
            "sanitized_orphan_tool_messages",
            orphan_results=list(orphan_result_ids),
            orphan_calls=list(orphan_call_ids),
        )

        cleaned: list[dict] = []
        for msg in messages:
            role = msg.get("role")
            tid = msg.get("tool_use_id")
            if role == "tool_result" and tid in orphan_result_ids:
                continue
            if role == "tool_call" and tid in orphan_call_ids:
                continue
            cleaned.append(msg)
        return cleaned
