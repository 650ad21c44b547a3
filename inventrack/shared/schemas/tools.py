"""Tool and module manifest schemas."""

from __future__ import annotations

import datetime as dt
import types
import uuid
from enum import Enum
from typing import Any, Literal, Union, get_args, get_origin

from pydantic import BaseModel


class ToolParameter(BaseModel):
    """Parameter definition for a tool."""

    name: str
    type: str  # string, integer, boolean, number, array, object
    description: str
    required: bool = True
    enum: list[str] | None = None


class ToolDefinition(BaseModel):
    """Definition of a single tool exposed by a module."""

    name: str  # e.g. "search_inventory"
    description: str
    parameters: list[ToolParameter]
    required_permission: str = "viewer"  # minimum role
    mutating: bool = False


class ModuleManifest(BaseModel):
    """Manifest describing a module and its tools."""

    module_name: str
    description: str
    tools: list[ToolDefinition]


class ToolCall(BaseModel):
    """A tool call request."""

    tool_name: str
    arguments: dict
    tool_use_id: str = ""
    # Set by providers when the model emitted arguments that are not valid JSON
    argument_error: str | None = None


class ToolResult(BaseModel):
    """Result from a tool execution."""

    tool_name: str
    success: bool
    result: Any = None
    error: str | None = None
    tool_use_id: str = ""


_JSON_TYPES: dict[type, str] = {
    bool: "boolean",
    int: "integer",
    float: "number",
    str: "string",
    uuid.UUID: "string",
    dt.datetime: "string",
    dt.date: "string",
    dict: "object",
    list: "array",
}


def _describe_annotation(annotation: Any) -> tuple[str, list[str] | None]:
    """Map a field annotation to a JSON type name and optional enum values."""
    origin = get_origin(annotation)
    if origin in (Union, types.UnionType):
        members = [a for a in get_args(annotation) if a is not type(None)]
        # date-or-datetime style unions collapse to their first member
        return _describe_annotation(members[0])
    if origin is Literal:
        return "string", [str(v) for v in get_args(annotation)]
    if origin in (list, dict):
        return _JSON_TYPES[origin], None
    if isinstance(annotation, type) and issubclass(annotation, Enum):
        return "string", [str(m.value) for m in annotation]
    for py_type, json_type in _JSON_TYPES.items():
        if isinstance(annotation, type) and issubclass(annotation, py_type):
            return json_type, None
    return "string", None


def parameters_from_model(model: type[BaseModel]) -> list[ToolParameter]:
    """Derive the model-facing parameter list from a tool's input model.

    The input model is the one contract shared by validation, the schema the
    model sees, and the execute function, so the two can never drift apart.
    """
    params = []
    for name, field in model.model_fields.items():
        json_type, enum = _describe_annotation(field.annotation)
        params.append(
            ToolParameter(
                name=name,
                type=json_type,
                description=field.description or "",
                required=field.is_required(),
                enum=enum,
            )
        )
    return params
