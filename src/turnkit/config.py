"""
Configuration models for turnkit.

Provides a flexible configuration system that can be loaded from
YAML files, the environment, or constructed programmatically.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from turnkit.compaction import CompactionPolicy
from turnkit.model_registry import ThinkingLevel

_ENV_PREFIX = "TURNKIT_"


@dataclass
class RetryPolicy:
    """Exponential backoff for retryable provider failures.

    The delay before attempt ``n`` (1-based, retries only) is
    ``min(base_delay * multiplier ** (n - 1), max_delay)``, unless the
    backend sent a ``Retry-After`` hint.
    """

    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    max_attempts: int = 4  # total attempts, including the first

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryPolicy:
        return cls(
            base_delay=float(data.get("base_delay", 1.0)),
            multiplier=float(data.get("multiplier", 2.0)),
            max_delay=float(data.get("max_delay", 30.0)),
            max_attempts=int(data.get("max_attempts", 4)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_delay": self.base_delay,
            "multiplier": self.multiplier,
            "max_delay": self.max_delay,
            "max_attempts": self.max_attempts,
        }


@dataclass
class DispatcherConfig:
    """Limits applied by the tool execution dispatcher."""

    max_concurrency: int = 4
    tool_timeout: float = 120.0  # seconds, per call
    grace_period: float = 2.0  # seconds between SIGTERM and SIGKILL
    max_output_chars: int = 50_000

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DispatcherConfig:
        return cls(
            max_concurrency=int(data.get("max_concurrency", 4)),
            tool_timeout=float(data.get("tool_timeout", 120.0)),
            grace_period=float(data.get("grace_period", 2.0)),
            max_output_chars=int(data.get("max_output_chars", 50_000)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_concurrency": self.max_concurrency,
            "tool_timeout": self.tool_timeout,
            "grace_period": self.grace_period,
            "max_output_chars": self.max_output_chars,
        }


@dataclass
class AgentConfig:
    """
    Configuration for the agent loop.

    Example YAML:
        provider: anthropic
        model: claude-sonnet-4-20250514
        max_tokens: 4096
        max_turns: 20
        thinking_level: medium
        system_prompt: "You are a careful coding assistant."
        session_dir: ~/.turnkit/sessions
        retry:
          base_delay: 1.0
          max_attempts: 4
        dispatcher:
          max_concurrency: 4
          tool_timeout: 120
        compaction:
          threshold: 0.8
          keep_recent: 6
    """

    # LLM settings
    provider: str = "openai"
    model: str = "gpt-4o"
    base_url: str | None = None
    temperature: float | None = None
    max_tokens: int = 4096
    thinking_level: ThinkingLevel = "off"
    request_timeout: float = 120.0  # seconds, per provider call

    # Agent behavior
    max_turns: int = 20
    system_prompt: str = ""
    session_dir: Path | None = None

    # Nested policies
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    compaction: CompactionPolicy = field(default_factory=CompactionPolicy)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentConfig:
        """Create config from a dictionary."""
        session_dir = data.get("session_dir")
        temperature = data.get("temperature")
        return cls(
            provider=data.get("provider", "openai"),
            model=data.get("model", "gpt-4o"),
            base_url=data.get("base_url"),
            temperature=float(temperature) if temperature is not None else None,
            max_tokens=int(data.get("max_tokens", 4096)),
            thinking_level=data.get("thinking_level", "off"),
            request_timeout=float(data.get("request_timeout", 120.0)),
            max_turns=int(data.get("max_turns", 20)),
            system_prompt=data.get("system_prompt", ""),
            session_dir=Path(session_dir).expanduser() if session_dir else None,
            retry=RetryPolicy.from_dict(data.get("retry") or {}),
            dispatcher=DispatcherConfig.from_dict(data.get("dispatcher") or {}),
            compaction=CompactionPolicy.from_dict(data.get("compaction") or {}),
        )

    @classmethod
    def from_yaml(cls, path: Path) -> AgentConfig:
        """Load config from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.from_dict(data or {})

    @classmethod
    def from_yaml_string(cls, content: str) -> AgentConfig:
        """Load config from a YAML string."""
        data = yaml.safe_load(content)
        return cls.from_dict(data or {})

    @classmethod
    def from_env(cls, **overrides: Any) -> AgentConfig:
        """
        Create config from ``TURNKIT_*`` environment variables.

        A ``.env`` file in the current directory (or a parent) is loaded
        first; variables already set in the process environment win.
        Keyword overrides win over both.
        """
        load_dotenv()
        data: dict[str, Any] = {}
        for key in (
            "provider",
            "model",
            "base_url",
            "temperature",
            "max_tokens",
            "thinking_level",
            "request_timeout",
            "max_turns",
            "system_prompt",
            "session_dir",
        ):
            value = os.environ.get(f"{_ENV_PREFIX}{key.upper()}")
            if value is not None and value != "":
                data[key] = value
        config = cls.from_dict(data)
        for key, value in overrides.items():
            if not hasattr(config, key):
                raise TypeError(f"Unknown AgentConfig field: {key!r}")
            setattr(config, key, value)
        return config

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary."""
        return {
            "provider": self.provider,
            "model": self.model,
            "base_url": self.base_url,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "thinking_level": self.thinking_level,
            "request_timeout": self.request_timeout,
            "max_turns": self.max_turns,
            "system_prompt": self.system_prompt,
            "session_dir": str(self.session_dir) if self.session_dir else None,
            "retry": self.retry.to_dict(),
            "dispatcher": self.dispatcher.to_dict(),
            "compaction": self.compaction.to_dict(),
        }
