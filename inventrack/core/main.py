"""FastAPI application for the inventory assistant service."""

from __future__ import annotations

import uuid

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import AliasChoices, BaseModel, Field

from inventrack.core.llm_router.router import LLMRouter
from inventrack.core.orchestrator.agent_loop import AgentLoop
from inventrack.core.orchestrator.prompt_builder import PromptBuilder
from inventrack.core.orchestrator.tool_registry import ToolRegistry
from inventrack.modules.inventory.handlers import register_inventory_tools
from inventrack.modules.inventory.tools import InventoryTools
from inventrack.modules.users.tools import UserAdminError, UserAdminTools
from inventrack.shared.auth import CallerIdentity, require_caller
from inventrack.shared.config import get_settings
from inventrack.shared.database import dispose_engine, get_session_factory
from inventrack.shared.permissions import Role
from inventrack.shared.schemas.common import HealthResponse
from inventrack.shared.schemas.messages import ChatRequest

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()

app = FastAPI(title="InvenTrack Assistant", version="1.0.0")

# Global instances (initialized on startup)
settings = get_settings()
llm_router: LLMRouter | None = None
tool_registry: ToolRegistry | None = None
agent_loop: AgentLoop | None = None
user_admin: UserAdminTools | None = None


class UpdateRoleRequest(BaseModel):
    user_id: uuid.UUID = Field(validation_alias=AliasChoices("user_id", "userId"))
    role: Role


@app.on_event("startup")
async def startup():
    """Initialize all services on startup."""
    global llm_router, tool_registry, agent_loop, user_admin

    logger.info("starting_assistant")

    session_factory = get_session_factory()
    llm_router = LLMRouter(settings)

    tool_registry = ToolRegistry()
    register_inventory_tools(tool_registry, InventoryTools(session_factory, settings))

    agent_loop = AgentLoop(
        settings=settings,
        llm_router=llm_router,
        tool_registry=tool_registry,
        prompt_builder=PromptBuilder(settings),
    )
    user_admin = UserAdminTools(session_factory)

    logger.info(
        "assistant_ready",
        providers=list(llm_router.providers),
        default_model=llm_router.effective_default_model,
    )


@app.on_event("shutdown")
async def shutdown():
    """Clean up on shutdown."""
    await dispose_engine()
    logger.info("assistant_shutdown")


def get_agent_loop() -> AgentLoop:
    if agent_loop is None:
        raise HTTPException(status_code=503, detail="Assistant not ready")
    return agent_loop


def get_user_admin() -> UserAdminTools:
    if user_admin is None:
        raise HTTPException(status_code=503, detail="Assistant not ready")
    return user_admin


async def current_caller(
    caller: CallerIdentity = Depends(require_caller),
    admin: UserAdminTools = Depends(get_user_admin),
) -> CallerIdentity:
    """Authenticated caller whose role reflects the profile store."""
    return await admin.resolve_caller(caller)


@app.post("/chat")
async def chat(
    request: ChatRequest,
    caller: CallerIdentity = Depends(current_caller),
    loop: AgentLoop = Depends(get_agent_loop),
) -> StreamingResponse:
    """Run one exchange and stream its events as server-sent events."""
    exchange = loop.start(request, caller)

    async def event_source():
        try:
            async for event in loop.run(exchange):
                yield f"data: {event.model_dump_json(exclude_none=True)}\n\n"
        finally:
            # Client went away or the exchange ended; either way stop work
            exchange.cancel()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/health", response_model=HealthResponse)
async def health():
    """Health check endpoint."""
    return HealthResponse(
        status="ok",
        providers=list(llm_router.providers) if llm_router else [],
        tools=len(tool_registry.tools) if tool_registry else 0,
    )


@app.get("/admin/users")
async def list_users(
    caller: CallerIdentity = Depends(current_caller),
    admin: UserAdminTools = Depends(get_user_admin),
):
    try:
        return {"users": await admin.list_users(caller)}
    except UserAdminError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


@app.patch("/admin/users")
async def update_user_role(
    body: UpdateRoleRequest,
    caller: CallerIdentity = Depends(current_caller),
    admin: UserAdminTools = Depends(get_user_admin),
):
    """Change another user's role. Admin only; callers cannot change their own role."""
    try:
        return await admin.update_user_role(caller, body.user_id, body.role)
    except UserAdminError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))


def run() -> None:
    """Serve the app with uvicorn (console entry point)."""
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info", proxy_headers=True)
