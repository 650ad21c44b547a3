"""Google (Gemini) LLM provider."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator

import structlog
from google import genai
from google.genai import errors, types

from inventrack.core.llm_router.providers.base import LLMProvider, StreamChunk
from inventrack.shared.schemas.tools import ToolCall

logger = structlog.get_logger()


class GoogleProvider(LLMProvider):
    """Provider for Google Gemini models."""

    def __init__(self, api_key: str):
        self.client = genai.Client(api_key=api_key)

    @staticmethod
    def _sanitize_name(name: str) -> str:
        """Google function names must be alphanumeric + underscore. Replace dots."""
        return name.replace(".", "__")

    def _clean_schema(self, schema: dict) -> dict:
        """Recursively cleans JSON schema for Gemini compatibility."""
        if not isinstance(schema, dict):
            return schema

        new_schema = {k: v for k, v in schema.items() if k != "title"}
        if "properties" in new_schema and "type" not in new_schema:
            new_schema["type"] = "object"
        if "properties" in new_schema:
            new_schema["properties"] = {
                k: self._clean_schema(v) for k, v in new_schema["properties"].items()
            }
        if "items" in new_schema:
            new_schema["items"] = self._clean_schema(new_schema["items"])
        return new_schema

    def _convert_tools(
        self,
        tools: list[dict] | None,
    ) -> tuple[list[types.Tool] | None, dict[str, str]]:
        name_map: dict[str, str] = {}
        if not tools:
            return None, name_map

        declarations = []
        for tool in tools:
            func = tool.get("function", tool)
            safe_name = self._sanitize_name(func["name"])
            name_map[safe_name] = func["name"]

            params = func.get("parameters") or {"type": "object", "properties": {}}
            declarations.append(
                types.FunctionDeclaration(
                    name=safe_name,
                    description=func.get("description", ""),
                    parameters_json_schema=self._clean_schema(params),
                )
            )
        return [types.Tool(function_declarations=declarations)], name_map

    @staticmethod
    def _append(contents: list[types.Content], role: str, part: types.Part) -> None:
        # Parallel calls and their responses must share one turn each
        if contents and contents[-1].role == role:
            contents[-1].parts.append(part)
        else:
            contents.append(types.Content(role=role, parts=[part]))

    def _convert_messages(
        self, messages: list[dict]
    ) -> tuple[str | None, list[types.Content]]:
        """Convert messages to Google format."""
        system_parts: list[str] = []
        contents: list[types.Content] = []
        for msg in messages:
            if msg["role"] == "system":
                system_parts.append(msg["content"])
            elif msg["role"] == "tool_call":
                self._append(
                    contents,
                    "model",
                    types.Part(
                        function_call=types.FunctionCall(
                            name=self._sanitize_name(msg.get("name", "")),
                            args=msg.get("arguments") or {},
                        )
                    ),
                )
            elif msg["role"] == "tool_result":
                self._append(
                    contents,
                    "user",
                    types.Part(
                        function_response=types.FunctionResponse(
                            name=self._sanitize_name(msg.get("name", "")),
                            response={"result": msg.get("content", "")},
                        )
                    ),
                )
            elif msg["role"] == "assistant":
                self._append(contents, "model", types.Part(text=msg["content"]))
            else:
                self._append(contents, "user", types.Part(text=msg["content"]))
        system = "\n\n".join(system_parts) if system_parts else None
        return system, contents

    async def _open_stream(self, model: str, contents, config):
        last_error = None
        for attempt in range(3):
            try:
                return await self.client.aio.models.generate_content_stream(
                    model=model,
                    contents=contents,
                    config=config,
                )
            except errors.ClientError:
                raise  # 4xx = bad payload, retrying won't help
            except Exception as e:
                last_error = e
                logger.warning("google_api_error", attempt=attempt, error=str(e))
                if attempt < 2:
                    await asyncio.sleep(2**attempt)
        raise last_error  # type: ignore[misc]

    async def stream_chat(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        model: str = "gemini-2.5-flash",
        max_tokens: int = 4000,
        temperature: float = 0.2,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion from Google Gemini."""
        system, contents = self._convert_messages(messages)
        google_tools, name_map = self._convert_tools(tools)

        config = types.GenerateContentConfig(
            max_output_tokens=max_tokens,
            temperature=temperature,
        )
        if system:
            config.system_instruction = system
        if google_tools:
            config.tools = google_tools

        stream = await self._open_stream(model, contents, config)

        saw_output = False
        saw_tool_call = False
        finish_reason = ""
        input_tokens = output_tokens = 0

        async for chunk in stream:
            if chunk.usage_metadata:
                input_tokens = chunk.usage_metadata.prompt_token_count or 0
                output_tokens = chunk.usage_metadata.candidates_token_count or 0
            if not chunk.candidates:
                continue
            candidate = chunk.candidates[0]
            if candidate.finish_reason:
                finish_reason = str(candidate.finish_reason)
            parts = candidate.content.parts if candidate.content else None
            for part in parts or []:
                if part.text:
                    saw_output = True
                    yield StreamChunk(type="text_delta", text=part.text)
                if part.function_call:
                    saw_output = saw_tool_call = True
                    raw_name = part.function_call.name
                    yield StreamChunk(
                        type="tool_call",
                        tool_call=ToolCall(
                            tool_name=name_map.get(raw_name, raw_name),
                            arguments=dict(part.function_call.args) if part.function_call.args else {},
                            # Gemini does not always assign call ids
                            tool_use_id=part.function_call.id or f"tool_{uuid.uuid4().hex[:12]}",
                        ),
                    )

        if not saw_output:
            logger.error("gemini_empty_response", finish_reason=finish_reason, model=model)
            raise RuntimeError(f"Gemini returned an empty response (finish_reason={finish_reason})")

        stop_reason = "end_turn"
        if saw_tool_call:
            stop_reason = "tool_use"
        elif "MAX_TOKENS" in finish_reason:
            stop_reason = "max_tokens"

        yield StreamChunk(
            type="finish",
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
        )
