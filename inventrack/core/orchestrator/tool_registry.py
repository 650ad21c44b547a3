"""Tool registry - holds tool contracts and routes validated calls to handlers."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass

import structlog
from pydantic import BaseModel, ValidationError

from inventrack.shared.auth import CallerIdentity
from inventrack.shared.permissions import Role, has_permission
from inventrack.shared.schemas.tools import ModuleManifest, ToolCall, ToolDefinition, ToolResult

logger = structlog.get_logger()

Handler = Callable[..., Awaitable[dict]]


@dataclass(frozen=True)
class RegisteredTool:
    definition: ToolDefinition
    input_model: type[BaseModel]
    handler: Handler


def format_validation_error(exc: ValidationError) -> str:
    """Render pydantic errors as one readable clause per offending field."""
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "arguments"
        problems.append(f"{location}: {err.get('msg', 'invalid value')}")
    return "Invalid arguments: " + "; ".join(problems)


class ToolRegistry:
    """Holds every tool's contract and executes calls against it."""

    def __init__(self):
        self.tools: dict[str, RegisteredTool] = {}
        self.manifests: dict[str, ModuleManifest] = {}

    def register(
        self,
        definition: ToolDefinition,
        input_model: type[BaseModel],
        handler: Handler,
    ) -> None:
        if definition.name in self.tools:
            raise ValueError(f"Tool already registered: {definition.name}")
        self.tools[definition.name] = RegisteredTool(definition, input_model, handler)

    def register_module(
        self,
        manifest: ModuleManifest,
        input_models: dict[str, type[BaseModel]],
        handlers: dict[str, Handler],
    ) -> None:
        """Register every tool a module manifest declares."""
        for tool in manifest.tools:
            if tool.name not in input_models or tool.name not in handlers:
                raise ValueError(f"Module {manifest.module_name} has no implementation for {tool.name}")
            self.register(tool, input_models[tool.name], handlers[tool.name])
        self.manifests[manifest.module_name] = manifest
        logger.info("module_registered", module=manifest.module_name, tools=len(manifest.tools))

    def get_tools_for_role(self, role: Role | str) -> list[ToolDefinition]:
        """Filter tools to the ones the given role may use, in registration order."""
        return [
            entry.definition
            for entry in self.tools.values()
            if has_permission(role, entry.definition.required_permission)
        ]

    def mutating_tools(self) -> list[ToolDefinition]:
        return [entry.definition for entry in self.tools.values() if entry.definition.mutating]

    def tools_to_openai_format(self, tools: list[ToolDefinition]) -> list[dict]:
        """Convert tool definitions to OpenAI function calling format."""
        openai_tools = []
        for tool in tools:
            properties = {}
            required = []
            for param in tool.parameters:
                prop: dict = {
                    "type": param.type,
                    "description": param.description,
                }
                if param.enum:
                    prop["enum"] = param.enum
                properties[param.name] = prop
                if param.required:
                    required.append(param.name)

            openai_tools.append({
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": {
                        "type": "object",
                        "properties": properties,
                        "required": required,
                    },
                },
            })
        return openai_tools

    async def execute_tool(
        self,
        tool_call: ToolCall,
        caller: CallerIdentity,
        allowed: Collection[str] | None = None,
    ) -> ToolResult:
        """Validate a call and run its handler.

        ``allowed`` is the tool set offered to the model for this exchange; a
        call outside it is rejected before any handler runs. Every failure is
        returned as an unsuccessful ``ToolResult``.
        """
        name = tool_call.tool_name

        def failure(error: str) -> ToolResult:
            return ToolResult(
                tool_name=name,
                success=False,
                error=error,
                tool_use_id=tool_call.tool_use_id,
            )

        entry = self.tools.get(name)
        if entry is None:
            logger.warning("unknown_tool_rejected", tool=name, user_id=str(caller.user_id))
            return failure(f"Unknown tool: {name}")

        if allowed is not None and name not in allowed:
            logger.warning(
                "tool_not_allowed",
                tool=name,
                role=caller.role.value,
                user_id=str(caller.user_id),
            )
            return failure(f"Tool '{name}' is not available for role '{caller.role.value}'")

        if tool_call.argument_error:
            logger.warning("tool_arguments_unparseable", tool=name, error=tool_call.argument_error)
            return failure(tool_call.argument_error)

        try:
            args = entry.input_model.model_validate(tool_call.arguments or {})
        except ValidationError as e:
            message = format_validation_error(e)
            logger.warning("tool_validation_failed", tool=name, error=message)
            return failure(message)

        try:
            result = await entry.handler(caller=caller, **dict(args))
        except Exception as e:
            logger.error("tool_execution_error", tool=name, error=str(e), exc_info=True)
            return failure(f"Tool execution error: {str(e)}")

        if isinstance(result, dict) and "error" in result:
            logger.info("tool_executed", tool=name, success=False, error=result["error"])
            return failure(str(result["error"]))

        logger.info("tool_executed", tool=name, success=True)
        return ToolResult(
            tool_name=name,
            success=True,
            result=result,
            tool_use_id=tool_call.tool_use_id,
        )
