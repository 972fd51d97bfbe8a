"""
Credential resolution for provider adapters.

Adapters never read API keys themselves; they ask a
:class:`CredentialResolver` on every request. Storage and lookup order are
up to the resolver.
"""

from __future__ import annotations

import os
from typing import Protocol, runtime_checkable

from dotenv import load_dotenv

from turnkit.logging import get_logger

logger = get_logger("credentials")

DEFAULT_ENV_VARS: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


@runtime_checkable
class CredentialResolver(Protocol):
    """Looks up the credential for a provider name, or ``None`` if absent."""

    def resolve(self, provider: str) -> str | None: ...


class EnvCredentialResolver:
    """
    Resolve credentials from environment variables.

    Example:
        resolver = EnvCredentialResolver({"openrouter": "OPENROUTER_API_KEY"})
        key = resolver.resolve("openrouter")
    """

    def __init__(
        self,
        env_vars: dict[str, str] | None = None,
        load_env_file: bool = True,
    ) -> None:
        self.env_vars = dict(DEFAULT_ENV_VARS)
        if env_vars:
            self.env_vars.update(env_vars)
        if load_env_file:
            load_dotenv()

    def resolve(self, provider: str) -> str | None:
        var = self.env_vars.get(provider, f"{provider.upper().replace('-', '_')}_API_KEY")
        value = os.environ.get(var)
        if not value:
            logger.debug("No credential for provider %s (checked %s)", provider, var)
            return None
        return value


class StaticCredentialResolver:
    """Resolve credentials from an in-memory mapping."""

    def __init__(self, credentials: dict[str, str] | None = None) -> None:
        self._credentials = dict(credentials or {})

    def set(self, provider: str, credential: str) -> None:
        self._credentials[provider] = credential

    def resolve(self, provider: str) -> str | None:
        return self._credentials.get(provider)
