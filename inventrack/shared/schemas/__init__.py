"""Pydantic schemas for the agent system."""

from inventrack.shared.schemas.common import HealthResponse
from inventrack.shared.schemas.messages import (
    ChatMessage,
    ChatRequest,
    StreamEvent,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from inventrack.shared.schemas.tools import (
    ModuleManifest,
    ToolCall,
    ToolDefinition,
    ToolParameter,
    ToolResult,
    parameters_from_model,
)

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "HealthResponse",
    "ModuleManifest",
    "StreamEvent",
    "TextPart",
    "ToolCall",
    "ToolCallPart",
    "ToolDefinition",
    "ToolParameter",
    "ToolResult",
    "ToolResultPart",
    "parameters_from_model",
]
