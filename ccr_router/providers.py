from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Iterable

from ccr_router.config import ProviderConfig, RouterConfig


@dataclass(slots=True)
class ProviderTarget:
    """All physical provider objects configured under one name.

    ``primary`` is the first entry seen and is always part of ``references``.
    """

    name: str
    primary: ProviderConfig
    references: list[ProviderConfig] = field(default_factory=list)

    def has_reference(self, provider: ProviderConfig) -> bool:
        return any(ref.instance_id == provider.instance_id for ref in self.references)


def collect_provider_targets(config: RouterConfig) -> list[ProviderTarget]:
    targets: dict[str, ProviderTarget] = {}

    def _register(providers: Iterable[ProviderConfig] | None) -> None:
        if not isinstance(providers, list):
            return
        for provider in providers:
            if not provider.name:
                continue
            existing = targets.get(provider.name)
            if existing is not None:
                if not existing.has_reference(provider):
                    existing.references.append(provider)
                continue
            targets[provider.name] = ProviderTarget(
                name=provider.name,
                primary=provider,
                references=[provider],
            )

    _register(config.providers)
    _register(config.alternate_providers)
    return list(targets.values())


def find_provider(config: RouterConfig, name: str) -> ProviderConfig | None:
    normalized = name.lower()
    for provider in config.iter_providers():
        if provider.name and provider.name.lower() == normalized:
            return provider
    return None


class ProviderService:
    """In-process registry of live provider objects keyed by name.

    The router only needs ``get_provider`` and ``update_provider``; updates are
    applied to the registered object in place so every holder sees them.
    """

    def __init__(self, providers: Iterable[ProviderConfig] = ()):
        self._lock = Lock()
        self._providers: dict[str, ProviderConfig] = {}
        for provider in providers:
            if provider.name and provider.name not in self._providers:
                self._providers[provider.name] = provider

    @classmethod
    def from_config(cls, config: RouterConfig) -> ProviderService:
        return cls(config.iter_providers())

    def get_provider(self, name: str) -> ProviderConfig | None:
        with self._lock:
            return self._providers.get(name)

    def update_provider(self, name: str, updates: dict[str, Any]) -> ProviderConfig | None:
        with self._lock:
            provider = self._providers.get(name)
            if provider is None:
                return None
            if "apiKey" in updates:
                provider.api_key = updates["apiKey"]
            if "api_base_url" in updates:
                provider.api_base_url = updates["api_base_url"]
            if "models" in updates and isinstance(updates["models"], list):
                provider.models = list(updates["models"])
            return provider

    def list_providers(self) -> list[ProviderConfig]:
        with self._lock:
            return list(self._providers.values())
