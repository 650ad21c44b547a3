"""Agent loop - the core reason/act/observe cycle for one exchange."""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from collections.abc import AsyncIterator, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import structlog

from inventrack.core.llm_router.providers.base import StreamChunk
from inventrack.core.llm_router.router import LLMRouter, LLMUnavailableError
from inventrack.core.llm_router.token_counter import estimate_cost
from inventrack.core.orchestrator.prompt_builder import PromptBuilder
from inventrack.core.orchestrator.tool_registry import ToolRegistry
from inventrack.shared.auth import CallerIdentity
from inventrack.shared.config import Settings
from inventrack.shared.schemas.messages import (
    ChatMessage,
    ChatRequest,
    StreamEvent,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from inventrack.shared.schemas.tools import ToolCall, ToolResult

logger = structlog.get_logger()

T = TypeVar("T")

BUDGET_EXHAUSTED_MESSAGE = (
    "I wasn't able to complete the task within the allowed number of steps. "
    "Please try a narrower question."
)


class ExchangeState(str, Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    ERROR = "error"


@dataclass
class Exchange:
    """One user-message-to-final-answer cycle.

    ``conversation`` only ever grows by whole steps: an assistant message is
    appended once its tool results are all in, so cancelling at any point
    leaves the history as of the last completed step.
    """

    caller: CallerIdentity
    conversation: list[ChatMessage]
    state: ExchangeState = ExchangeState.AWAITING_MODEL
    steps: int = 0
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)

    def cancel(self) -> None:
        self.cancelled.set()


async def _next_chunk(stream: AsyncIterator[StreamChunk]) -> StreamChunk | None:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


class AgentLoop:
    """Drives the model through bounded tool-calling steps for one caller."""

    def __init__(
        self,
        settings: Settings,
        llm_router: LLMRouter,
        tool_registry: ToolRegistry,
        prompt_builder: PromptBuilder,
    ):
        self.settings = settings
        self.llm_router = llm_router
        self.tool_registry = tool_registry
        self.prompt_builder = prompt_builder

    def start(self, request: ChatRequest, caller: CallerIdentity) -> Exchange:
        """Create an exchange that owns a private copy of the conversation."""
        return Exchange(
            caller=caller,
            conversation=[m.model_copy(deep=True) for m in request.messages],
        )

    async def stream(self, request: ChatRequest, caller: CallerIdentity) -> AsyncIterator[StreamEvent]:
        async for event in self.run(self.start(request, caller)):
            yield event

    @staticmethod
    def _check_cancelled(exchange: Exchange) -> None:
        if exchange.cancelled.is_set():
            raise asyncio.CancelledError()

    async def _guarded(self, exchange: Exchange, coro: Coroutine[Any, Any, T]) -> T:
        """Run ``coro`` unless the exchange is cancelled first."""
        if exchange.cancelled.is_set():
            coro.close()
            raise asyncio.CancelledError()
        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(exchange.cancelled.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task not in done:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise asyncio.CancelledError()
        return task.result()

    async def run(self, exchange: Exchange) -> AsyncIterator[StreamEvent]:
        """Execute the exchange, yielding stream events as they happen.

        Ends with exactly one ``done`` or ``error`` event. Cancellation
        propagates as ``asyncio.CancelledError``.
        """
        caller = exchange.caller
        tools = self.tool_registry.get_tools_for_role(caller.role)
        allowed = {t.name for t in tools}
        restricted = [t.name for t in self.tool_registry.mutating_tools() if t.name not in allowed]
        system_prompt = self.prompt_builder.build_system_prompt(caller.role, tools, restricted)
        openai_tools = self.tool_registry.tools_to_openai_format(tools) if tools else None
        max_steps = self.settings.max_agent_steps
        produced_text = False

        logger.info(
            "exchange_started",
            user_id=str(caller.user_id),
            role=caller.role.value,
            messages=len(exchange.conversation),
            tools=sorted(allowed),
        )

        try:
            while exchange.steps < max_steps:
                self._check_cancelled(exchange)
                exchange.steps += 1
                exchange.state = ExchangeState.AWAITING_MODEL
                yield StreamEvent(type="status", state=exchange.state.value, step=exchange.steps)

                messages = self.prompt_builder.build_messages(system_prompt, exchange.conversation)
                text_parts: list[str] = []
                tool_calls: list[ToolCall] = []
                finish: StreamChunk | None = None

                stream = self.llm_router.stream_chat(
                    messages=messages,
                    tools=openai_tools,
                    max_tokens=self.settings.max_output_tokens,
                    temperature=self.settings.temperature,
                )
                try:
                    while True:
                        chunk = await self._guarded(exchange, _next_chunk(stream))
                        if chunk is None:
                            break
                        if chunk.type == "text_delta" and chunk.text:
                            text_parts.append(chunk.text)
                            yield StreamEvent(type="text", delta=chunk.text)
                        elif chunk.type == "tool_call" and chunk.tool_call is not None:
                            tool_calls.append(chunk.tool_call)
                        elif chunk.type == "finish":
                            finish = chunk
                except (asyncio.CancelledError, GeneratorExit):
                    raise
                except Exception as e:
                    exchange.state = ExchangeState.ERROR
                    retryable = e.retryable if isinstance(e, LLMUnavailableError) else True
                    logger.error(
                        "exchange_model_failed",
                        user_id=str(caller.user_id),
                        step=exchange.steps,
                        error=str(e),
                        exc_info=True,
                    )
                    yield StreamEvent(
                        type="error",
                        message="The assistant is temporarily unavailable. Please try again.",
                        retryable=retryable,
                        steps=exchange.steps,
                        conversation=list(exchange.conversation),
                    )
                    return
                finally:
                    await stream.aclose()

                if finish is not None:
                    logger.info(
                        "model_step",
                        step=exchange.steps,
                        model=finish.model,
                        input_tokens=finish.input_tokens,
                        output_tokens=finish.output_tokens,
                        cost=estimate_cost(finish.model, finish.input_tokens, finish.output_tokens),
                        tool_calls=len(tool_calls),
                    )

                text = "".join(text_parts)
                produced_text = produced_text or bool(text)

                if not tool_calls:
                    if text:
                        exchange.conversation.append(
                            ChatMessage(role="assistant", parts=[TextPart(text=text)])
                        )
                    exchange.state = ExchangeState.DONE
                    logger.info(
                        "exchange_finished",
                        user_id=str(caller.user_id),
                        steps=exchange.steps,
                        stop_reason="final_answer",
                    )
                    yield self._done(exchange, "final_answer")
                    return

                if exchange.steps >= max_steps:
                    # No model call is left to read the results, so nothing runs
                    logger.warning(
                        "step_budget_dropped_tool_calls",
                        tools=[c.tool_name for c in tool_calls],
                    )
                    if text:
                        exchange.conversation.append(
                            ChatMessage(role="assistant", parts=[TextPart(text=text)])
                        )
                    break

                for call in tool_calls:
                    if not call.tool_use_id:
                        call.tool_use_id = f"tool_{uuid.uuid4().hex[:12]}"

                exchange.state = ExchangeState.EXECUTING_TOOLS
                yield StreamEvent(
                    type="status",
                    state=exchange.state.value,
                    step=exchange.steps,
                    tools=[c.tool_name for c in tool_calls],
                )

                results = await self._guarded(
                    exchange, self._execute_all(tool_calls, caller, allowed)
                )
                self._check_cancelled(exchange)

                exchange.conversation.append(self._step_message(text, tool_calls, results))
                for result in results:
                    yield StreamEvent(
                        type="tool_result",
                        tool_name=result.tool_name,
                        success=result.success,
                    )

            if not produced_text:
                exchange.conversation.append(
                    ChatMessage(role="assistant", parts=[TextPart(text=BUDGET_EXHAUSTED_MESSAGE)])
                )
                yield StreamEvent(type="text", delta=BUDGET_EXHAUSTED_MESSAGE)
            exchange.state = ExchangeState.DONE
            logger.info(
                "exchange_finished",
                user_id=str(caller.user_id),
                steps=exchange.steps,
                stop_reason="step_budget",
            )
            yield self._done(exchange, "step_budget")
        except asyncio.CancelledError:
            exchange.state = ExchangeState.ERROR
            logger.info(
                "exchange_cancelled",
                user_id=str(caller.user_id),
                steps=exchange.steps,
                messages=len(exchange.conversation),
            )
            raise

    async def _execute_all(
        self,
        calls: list[ToolCall],
        caller: CallerIdentity,
        allowed: set[str],
    ) -> list[ToolResult]:
        """Run every call of one step concurrently; results keep call order."""
        return list(
            await asyncio.gather(
                *(self.tool_registry.execute_tool(call, caller, allowed) for call in calls)
            )
        )

    @staticmethod
    def _step_message(text: str, calls: list[ToolCall], results: list[ToolResult]) -> ChatMessage:
        parts: list = [TextPart(text=text)] if text else []
        parts.extend(
            ToolCallPart(tool_use_id=c.tool_use_id, tool_name=c.tool_name, arguments=c.arguments)
            for c in calls
        )
        parts.extend(
            ToolResultPart(
                tool_use_id=call.tool_use_id,
                tool_name=r.tool_name,
                success=r.success,
                result=r.result,
                error=r.error,
            )
            for call, r in zip(calls, results)
        )
        return ChatMessage(role="assistant", parts=parts)

    @staticmethod
    def _done(exchange: Exchange, stop_reason: str) -> StreamEvent:
        return StreamEvent(
            type="done",
            stop_reason=stop_reason,
            steps=exchange.steps,
            conversation=list(exchange.conversation),
        )
