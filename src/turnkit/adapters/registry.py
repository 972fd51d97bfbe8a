"""
Adapter registry for runtime provider management.

Provides a central registry where adapters can be registered, looked up,
and switched at runtime.

Example:
    from turnkit.adapters.registry import AdapterRegistry

    registry = AdapterRegistry()

    # Register by instance
    registry.register("openai", my_openai_adapter)

    # Register by factory (lazy creation)
    registry.register_factory("anthropic", lambda: AnthropicAdapter())

    adapter = registry.get("openai")
    registry.set_default("anthropic")
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from turnkit.logging import get_logger

if TYPE_CHECKING:
    from turnkit.adapters.base import ProviderAdapter
    from turnkit.config import AgentConfig
    from turnkit.credentials import CredentialResolver
    from turnkit.model_registry import ModelRegistry

logger = get_logger("adapters.registry")

AdapterFactory = Callable[[], "ProviderAdapter"]


class _AdapterEntry:
    """Internal entry holding either an adapter instance or a factory."""

    __slots__ = ("name", "instance", "factory", "source")

    def __init__(
        self,
        name: str,
        instance: ProviderAdapter | None = None,
        factory: AdapterFactory | None = None,
        source: str = "",
    ) -> None:
        self.name = name
        self.instance = instance
        self.factory = factory
        self.source = source


class AdapterRegistry:
    """
    A registry of provider adapters.

    Adapters can be registered by instance (eager) or by factory (lazy).
    The first registration becomes the default until :meth:`set_default`.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _AdapterEntry] = {}
        self._default_name: str | None = None

    def register(self, name: str, adapter: ProviderAdapter, source: str = "") -> None:
        """
        Register an adapter instance.

        Raises:
            ValueError: If name is empty
        """
        if not name:
            raise ValueError("Adapter name must not be empty")
        if name in self._entries:
            logger.debug("Overriding adapter: %s", name)

        self._entries[name] = _AdapterEntry(name=name, instance=adapter, source=source)
        logger.debug("Registered adapter: %s (source=%s)", name, source or "manual")
        if self._default_name is None:
            self._default_name = name

    def register_factory(self, name: str, factory: AdapterFactory, source: str = "") -> None:
        """
        Register a factory, called the first time the adapter is requested.

        Raises:
            ValueError: If name is empty
        """
        if not name:
            raise ValueError("Adapter name must not be empty")
        if name in self._entries:
            logger.debug("Overriding adapter factory: %s", name)

        self._entries[name] = _AdapterEntry(name=name, factory=factory, source=source)
        logger.debug("Registered adapter factory: %s (source=%s)", name, source or "manual")
        if self._default_name is None:
            self._default_name = name

    def get(self, name: str) -> ProviderAdapter:
        """
        Get an adapter by name, creating it from its factory if needed.

        Raises:
            KeyError: If adapter not found
        """
        entry = self._entries.get(name)
        if entry is None:
            available = ", ".join(self._entries.keys()) or "(none)"
            raise KeyError(f"Adapter '{name}' not found. Available: {available}")

        if entry.instance is None:
            if entry.factory is None:
                raise RuntimeError(f"Adapter '{name}' has no instance or factory")
            logger.debug("Creating adapter '%s' from factory", name)
            entry.instance = entry.factory()
        return entry.instance

    def get_default(self) -> ProviderAdapter | None:
        if self._default_name is None:
            return None
        return self.get(self._default_name)

    @property
    def default_name(self) -> str | None:
        return self._default_name

    def set_default(self, name: str) -> None:
        if name not in self._entries:
            available = ", ".join(self._entries.keys()) or "(none)"
            raise KeyError(f"Adapter '{name}' not found. Available: {available}")
        self._default_name = name
        logger.debug("Default adapter set to: %s", name)

    def unregister(self, name: str) -> bool:
        """Remove a registered adapter. Returns False if it was not registered."""
        if name not in self._entries:
            return False
        del self._entries[name]
        logger.debug("Unregistered adapter: %s", name)
        if self._default_name == name:
            self._default_name = next(iter(self._entries), None)
        return True

    def unregister_by_source(self, source: str) -> int:
        to_remove = [name for name, entry in self._entries.items() if entry.source == source]
        for name in to_remove:
            self.unregister(name)
        return len(to_remove)

    def list_adapters(self) -> list[str]:
        return list(self._entries.keys())

    def get_info(self, name: str) -> dict[str, Any]:
        entry = self._entries.get(name)
        if entry is None:
            raise KeyError(f"Adapter '{name}' not found")
        return {
            "name": entry.name,
            "source": entry.source,
            "has_instance": entry.instance is not None,
            "has_factory": entry.factory is not None,
            "is_default": entry.name == self._default_name,
        }

    def clear(self) -> None:
        self._entries.clear()
        self._default_name = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __repr__(self) -> str:
        names = ", ".join(self._entries.keys())
        default = f" default={self._default_name}" if self._default_name else ""
        return f"AdapterRegistry([{names}]{default})"


def create_default_registry(
    config: AgentConfig,
    credentials: CredentialResolver | None = None,
    models: ModelRegistry | None = None,
) -> AdapterRegistry:
    """
    Registry with lazy OpenAI and Anthropic factories built from ``config``.

    ``config.provider`` becomes the default.
    """
    from turnkit.adapters.anthropic import AnthropicAdapter
    from turnkit.adapters.openai import OpenAIAdapter

    common: dict[str, Any] = {
        "credentials": credentials,
        "retry": config.retry,
        "request_timeout": config.request_timeout,
        "base_url": config.base_url,
    }
    registry = AdapterRegistry()
    registry.register_factory(
        "openai", lambda: OpenAIAdapter(model=config.model, **common), source="builtin"
    )
    registry.register_factory(
        "anthropic",
        lambda: AnthropicAdapter(model=config.model, models=models, **common),
        source="builtin",
    )
    if config.provider in registry:
        registry.set_default(config.provider)
    return registry
