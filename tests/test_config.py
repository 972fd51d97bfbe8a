"""Tests for configuration loading."""

from pathlib import Path
from textwrap import dedent

import pytest

from turnkit.compaction import CompactionPolicy
from turnkit.config import AgentConfig, DispatcherConfig, RetryPolicy


class TestAgentConfig:
    def test_defaults(self):
        config = AgentConfig()

        assert config.provider == "openai"
        assert config.max_turns == 20
        assert config.retry == RetryPolicy()
        assert config.dispatcher.max_concurrency == 4
        assert config.compaction == CompactionPolicy()

    def test_from_yaml_string(self):
        config = AgentConfig.from_yaml_string(
            dedent(
                """
                provider: anthropic
                model: claude-sonnet-4-20250514
                temperature: 0.2
                thinking_level: medium
                max_turns: 8
                session_dir: ~/sessions
                retry:
                  base_delay: 0.5
                  max_attempts: 2
                dispatcher:
                  tool_timeout: 30
                compaction:
                  threshold: 0.6
                  keep_recent: 4
                """
            )
        )

        assert config.provider == "anthropic"
        assert config.temperature == 0.2
        assert config.thinking_level == "medium"
        assert config.max_turns == 8
        assert config.session_dir == Path("~/sessions").expanduser()
        assert config.retry == RetryPolicy(base_delay=0.5, max_attempts=2)
        assert config.dispatcher.tool_timeout == 30.0
        assert config.compaction.threshold == 0.6
        assert config.compaction.keep_recent == 4

    def test_empty_yaml(self):
        assert AgentConfig.from_yaml_string("") == AgentConfig()

    def test_from_yaml_file(self, tmp_path: Path):
        path = tmp_path / "turnkit.yaml"
        path.write_text("model: gpt-4.1\nmax_tokens: 1000\n")

        config = AgentConfig.from_yaml(path)

        assert config.model == "gpt-4.1"
        assert config.max_tokens == 1000

    def test_dict_round_trip(self):
        config = AgentConfig(
            provider="anthropic",
            session_dir=Path("/tmp/sessions"),
            dispatcher=DispatcherConfig(max_concurrency=2),
        )

        assert AgentConfig.from_dict(config.to_dict()) == config

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TURNKIT_PROVIDER", "anthropic")
        monkeypatch.setenv("TURNKIT_MAX_TURNS", "3")
        monkeypatch.setenv("TURNKIT_MODEL", "")

        config = AgentConfig.from_env(model="claude-haiku-4-20250414")

        assert config.provider == "anthropic"
        assert config.max_turns == 3
        assert config.model == "claude-haiku-4-20250414"

    def test_from_env_rejects_unknown_override(self):
        with pytest.raises(TypeError):
            AgentConfig.from_env(colour="blue")


class TestPolicies:
    def test_retry_round_trip(self):
        policy = RetryPolicy(base_delay=0.1, multiplier=3.0, max_delay=5.0, max_attempts=6)
        assert RetryPolicy.from_dict(policy.to_dict()) == policy

    def test_dispatcher_round_trip(self):
        config = DispatcherConfig(max_concurrency=1, tool_timeout=5, grace_period=0.5)
        assert DispatcherConfig.from_dict(config.to_dict()) == config
