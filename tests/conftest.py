"""Shared pytest fixtures for turnkit tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from turnkit.adapters.scripted import ScriptedAdapter
from turnkit.config import AgentConfig
from turnkit.events import EventBus
from turnkit.session import SessionManager
from turnkit.tools import ToolRegistry, create_builtin_tools, tool


@pytest.fixture
def session_manager(tmp_path: Path) -> SessionManager:
    """A session manager over a temporary directory."""
    return SessionManager(tmp_path / "sessions")


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A working directory with a small text file in it."""
    root = tmp_path / "work"
    root.mkdir()
    (root / "notes.txt").write_text("hello from notes\nsecond line\n")
    return root


@pytest.fixture
def builtin_tools(workspace: Path) -> ToolRegistry:
    return create_builtin_tools(str(workspace))


@pytest.fixture
def echo_registry() -> ToolRegistry:
    """Registry with a trivial ``echo`` tool."""

    @tool
    async def echo(text: str) -> str:
        """Echo the input back."""
        return text

    return ToolRegistry([echo])


@pytest.fixture
def scripted() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def config() -> AgentConfig:
    return AgentConfig(provider="scripted", model="scripted", max_turns=5)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()
