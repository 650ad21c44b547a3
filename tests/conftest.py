"""Shared test fixtures for the inventrack test suite.

Provides a seeded SQLite catalogue, caller identities, and a scripted
stand-in for the LLM router so the agent loop runs without any provider.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from inventrack.core.llm_router.providers.base import StreamChunk
from inventrack.core.orchestrator.prompt_builder import PromptBuilder
from inventrack.core.orchestrator.tool_registry import ToolRegistry
from inventrack.modules.inventory.manifest import INPUT_MODELS, MANIFEST
from inventrack.shared.auth import CallerIdentity
from inventrack.shared.config import Settings
from inventrack.shared.database import create_engine, create_session_factory, create_tables
from inventrack.shared.models import Category, Product, Profile, StockMovement
from inventrack.shared.permissions import Role
from inventrack.shared.schemas.tools import ToolCall

NOW = datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Settings and callers
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        anthropic_api_key="",
        openai_api_key="",
        google_api_key="",
        jwt_secret="test-secret",
        default_model="gemini-2.5-flash",
        fallback_chain="gemini-2.5-flash,gpt-4o-mini",
    )


@pytest.fixture
def make_caller():
    """Factory for CallerIdentity instances."""

    def _make(role: Role | str = Role.VIEWER, user_id: uuid.UUID | None = None) -> CallerIdentity:
        return CallerIdentity(
            user_id=user_id or uuid.uuid4(),
            role=Role(role),
            email=f"{Role(role).value}@example.com",
        )

    return _make


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh file-backed SQLite database with all tables created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'inventrack.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def catalogue(session_factory):
    """Seed two categories, five products and a movement ledger.

    Returns a dict of the seeded products keyed by SKU.
    """
    electronics = Category(id=uuid.uuid4(), name="Electronics")
    furniture = Category(id=uuid.uuid4(), name="Furniture")

    products = {
        "ELEC-001": Product(
            id=uuid.uuid4(), name="Laptop Pro 14", sku="ELEC-001", category_id=electronics.id,
            quantity=5, min_stock_level=10, unit_price=1200.0, status="low_stock",
        ),
        "ELEC-002": Product(
            id=uuid.uuid4(), name="USB-C Cable", sku="ELEC-002", category_id=electronics.id,
            quantity=0, min_stock_level=20, unit_price=9.99, status="out_of_stock",
        ),
        "FURN-001": Product(
            id=uuid.uuid4(), name="Ergonomic Chair", sku="FURN-001", category_id=furniture.id,
            description="Adjustable ergonomic office chair",
            quantity=40, min_stock_level=10, unit_price=250.0, status="in_stock",
        ),
        "FURN-002": Product(
            id=uuid.uuid4(), name="Standing Desk", sku="FURN-002", category_id=furniture.id,
            quantity=8, min_stock_level=8, unit_price=499.5, status="low_stock",
        ),
        "MISC-001": Product(
            id=uuid.uuid4(), name="Label Printer", sku="MISC-001", category_id=None,
            quantity=15, min_stock_level=5, unit_price=80.0, status="in_stock",
        ),
    }

    laptop = products["ELEC-001"].id
    chair = products["FURN-001"].id
    movements = [
        (laptop, 20, "inbound", 80),
        (laptop, -6, "outbound", 25),
        (laptop, -9, "outbound", 10),
        (laptop, -2, "adjustment", 5),
        (laptop, -50, "outbound", 120),  # outside the default window
        (chair, -4, "outbound", 3),
        (chair, 10, "inbound", 2),
    ]

    async with session_factory() as session:
        session.add_all([electronics, furniture, *products.values()])
        await session.flush()
        session.add_all(
            StockMovement(
                id=uuid.uuid4(),
                product_id=pid,
                quantity_change=change,
                movement_type=kind,
                created_at=NOW - timedelta(days=days_ago),
            )
            for pid, change, kind, days_ago in movements
        )
        await session.commit()

    return products


@pytest_asyncio.fixture
async def profiles(session_factory):
    """Seed one admin, one manager and one viewer profile."""
    rows = {
        role: Profile(id=uuid.uuid4(), email=f"{role}@example.com", full_name=role.title(), role=role)
        for role in ("admin", "manager", "viewer")
    }
    async with session_factory() as session:
        session.add_all(rows.values())
        await session.commit()
    return rows


# ---------------------------------------------------------------------------
# Orchestration doubles
# ---------------------------------------------------------------------------


class ScriptedRouter:
    """Stands in for LLMRouter, replaying one scripted response per model call.

    Each script entry is either an exception to raise before any output, or a
    dict with optional ``text`` and ``calls`` (``(name, arguments, id)``
    tuples). The last entry repeats once the script runs out.
    """

    def __init__(self, script: list):
        self.script = list(script)
        self.calls: list[dict] = []

    async def stream_chat(self, messages, tools=None, model=None, max_tokens=4000, temperature=0.2):
        self.calls.append({"messages": messages, "tools": tools})
        step = self.script[min(len(self.calls), len(self.script)) - 1]
        if isinstance(step, Exception):
            raise step
        text = step.get("text", "")
        # Stream text in two deltas to exercise incremental delivery
        if text:
            middle = len(text) // 2 or len(text)
            for piece in (text[:middle], text[middle:]):
                if piece:
                    yield StreamChunk(type="text_delta", text=piece)
        calls = step.get("calls", [])
        for name, arguments, tool_use_id in calls:
            yield StreamChunk(
                type="tool_call",
                tool_call=ToolCall(tool_name=name, arguments=arguments, tool_use_id=tool_use_id),
            )
        yield StreamChunk(
            type="finish",
            stop_reason="tool_use" if calls else "end_turn",
            input_tokens=100,
            output_tokens=20,
            model="gemini-2.5-flash",
        )


@pytest.fixture
def make_router():
    """Factory for ScriptedRouter instances."""
    return ScriptedRouter


@pytest.fixture
def tool_handlers():
    """AsyncMock handlers for every inventory tool, each returning a small dict."""
    return {name: AsyncMock(return_value={"ok": name}) for name in INPUT_MODELS}


@pytest.fixture
def mock_registry(tool_handlers):
    """A registry carrying the real inventory contracts with mocked handlers."""
    registry = ToolRegistry()
    registry.register_module(MANIFEST, INPUT_MODELS, tool_handlers)
    return registry


@pytest.fixture
def prompt_builder(settings):
    return PromptBuilder(settings)
