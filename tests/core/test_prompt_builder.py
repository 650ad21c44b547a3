"""Tests for role-specific system prompts and model-facing message history."""

from __future__ import annotations

from datetime import date

from inventrack.shared.permissions import Role
from inventrack.shared.schemas.messages import ChatMessage, TextPart, ToolCallPart, ToolResultPart

TODAY = date(2026, 3, 1)


def _prompt(prompt_builder, registry, role):
    tools = registry.get_tools_for_role(role)
    allowed = {t.name for t in tools}
    restricted = [t.name for t in registry.mutating_tools() if t.name not in allowed]
    return prompt_builder.build_system_prompt(role, tools, restricted, today=TODAY)


def _tool_lines(prompt):
    section = prompt.split("## Your Tools\n", 1)[1].split("\n\n", 1)[0]
    return [line for line in section.splitlines() if line.startswith("- **")]


class TestSystemPrompt:

    def test_viewer_sees_only_read_tools(self, prompt_builder, mock_registry):
        prompt = _prompt(prompt_builder, mock_registry, Role.VIEWER)
        lines = _tool_lines(prompt)
        assert len(lines) == 4
        assert not any("update_stock_threshold" in line for line in lines)
        assert "The current user's role is **viewer**" in prompt

    def test_viewer_told_not_to_attempt_writes(self, prompt_builder, mock_registry):
        prompt = _prompt(prompt_builder, mock_registry, Role.VIEWER)
        assert "### Read-only access" in prompt
        assert "Never call or attempt to call update_stock_threshold" in prompt
        assert "admin or manager" in prompt
        assert "### Applying thresholds" not in prompt

    def test_manager_gets_write_guidance(self, prompt_builder, mock_registry):
        prompt = _prompt(prompt_builder, mock_registry, Role.MANAGER)
        assert len(_tool_lines(prompt)) == 5
        assert "### Applying thresholds" in prompt
        assert "### Read-only access" not in prompt

    def test_threshold_methodology(self, prompt_builder, mock_registry):
        prompt = _prompt(prompt_builder, mock_registry, Role.ADMIN)
        assert "avg_daily_consumption × lead_time_days × (1 + safety_margin)" in prompt
        assert "20-30%" in prompt
        assert "40-50%" in prompt
        assert "Show the math" in prompt
        assert "Always call get_stock_movements FIRST" in prompt

    def test_lead_time_hint_from_settings(self, settings, mock_registry):
        from inventrack.core.orchestrator.prompt_builder import PromptBuilder

        settings.lead_time_days_hint = "10"
        prompt = _prompt(PromptBuilder(settings), mock_registry, Role.MANAGER)
        assert "assume 10 business days" in prompt

    def test_includes_date(self, prompt_builder, mock_registry):
        assert "Today's date is 2026-03-01" in _prompt(prompt_builder, mock_registry, Role.VIEWER)

    def test_deterministic(self, prompt_builder, mock_registry):
        assert _prompt(prompt_builder, mock_registry, Role.VIEWER) == _prompt(
            prompt_builder, mock_registry, Role.VIEWER
        )

    def test_tool_lines_use_first_sentence(self, prompt_builder, mock_registry):
        lines = _tool_lines(_prompt(prompt_builder, mock_registry, Role.VIEWER))
        assert lines[0] == (
            "- **search_inventory**: Search inventory items by name, SKU, description, or category."
        )


class TestBuildMessages:

    def test_flattens_parts_in_order(self, prompt_builder):
        conversation = [
            ChatMessage.user("What's low?"),
            ChatMessage(role="assistant", parts=[
                TextPart(text="Checking."),
                ToolCallPart(tool_use_id="t1", tool_name="get_low_stock_items", arguments={}),
                ToolResultPart(tool_use_id="t1", tool_name="get_low_stock_items", success=True,
                               result={"count": 0, "items": []}),
            ]),
        ]
        messages = prompt_builder.build_messages("SYSTEM", conversation)
        assert [m["role"] for m in messages] == ["system", "user", "assistant", "tool_call", "tool_result"]
        assert messages[0]["content"] == "SYSTEM"
        assert messages[4]["content"] == '{"count": 0, "items": []}'

    def test_failed_result_rendered_as_error(self, prompt_builder):
        part = ToolResultPart(tool_use_id="t1", tool_name="x", success=False, error="Product not found")
        assert prompt_builder.render_tool_result(part) == "Error: Product not found"

    def test_large_result_truncated(self, settings):
        from inventrack.core.orchestrator.prompt_builder import PromptBuilder

        settings.tool_result_max_chars = 50
        part = ToolResultPart(tool_use_id="t1", tool_name="search_inventory", success=True,
                              result={"products": ["x" * 200]})
        content = PromptBuilder(settings).render_tool_result(part)
        assert content.endswith("\n... [truncated]")
        assert len(content) == 50 + len("\n... [truncated]")

    def test_orphaned_tool_messages_dropped(self, prompt_builder):
        conversation = [
            ChatMessage.user("hi"),
            ChatMessage(role="assistant", parts=[
                ToolCallPart(tool_use_id="lonely", tool_name="get_low_stock_items", arguments={}),
                ToolResultPart(tool_use_id="ghost", tool_name="get_analytics", success=True, result={}),
            ]),
        ]
        messages = prompt_builder.build_messages("SYSTEM", conversation)
        assert [m["role"] for m in messages] == ["system", "user"]
