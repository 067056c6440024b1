from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Iterator
from uuid import uuid4

import yaml
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    SerializerFunctionWrapHandler,
    field_validator,
    model_serializer,
)

DEFAULT_LONG_CONTEXT_THRESHOLD = 60_000

_ENV_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}|\$([A-Z_][A-Z0-9_]*)")


@dataclass(slots=True)
class ApiKeyOverride:
    request_id: str
    new_key: str


@dataclass(slots=True)
class ProviderCredentialState:
    """Dynamic credential bookkeeping attached to one provider object.

    ``static_api_key`` is captured the first time an override is applied and
    never changes afterwards. The top of ``stack`` is always the key visible
    through the provider's ``api_key`` field.
    """

    static_api_key: str | None = None
    captured: bool = False
    stack: list[ApiKeyOverride] = field(default_factory=list)
    lock: Lock = field(default_factory=Lock)


class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str | None = None
    api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("api_key", "apiKey"),
    )
    api_base_url: str | None = None
    models: list[str] = Field(default_factory=list)

    _instance_id: str = PrivateAttr(default_factory=lambda: uuid4().hex)
    _credential_state: ProviderCredentialState = PrivateAttr(
        default_factory=ProviderCredentialState
    )

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str)]

    @model_serializer(mode="wrap")
    def _serialize_with_key_aliases(
        self, handler: SerializerFunctionWrapHandler
    ) -> dict[str, Any]:
        data = handler(self)
        data["api_key"] = self.api_key
        data["apiKey"] = self.api_key
        return data

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def credential_state(self) -> ProviderCredentialState:
        return self._credential_state

    def find_model(self, model: str) -> str | None:
        normalized = model.lower()
        for candidate in self.models:
            if candidate.lower() == normalized:
                return candidate
        return None


class RouterPolicy(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    default: str
    background: str | None = None
    think: str | None = None
    long_context: str | None = Field(default=None, alias="longContext")
    long_context_threshold: int | None = Field(
        default=None, alias="longContextThreshold"
    )
    web_search: str | None = Field(default=None, alias="webSearch")

    @field_validator("default")
    @classmethod
    def _require_default(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Router.default must be a non-empty model identifier.")
        return normalized

    @property
    def effective_long_context_threshold(self) -> int:
        return self.long_context_threshold or DEFAULT_LONG_CONTEXT_THRESHOLD


class RouterConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    router: RouterPolicy = Field(alias="Router")
    providers: list[ProviderConfig] = Field(default_factory=list, alias="Providers")
    alternate_providers: list[ProviderConfig] = Field(
        default_factory=list, alias="providers"
    )
    rewrite_system_prompt: str | None = Field(
        default=None, alias="REWRITE_SYSTEM_PROMPT"
    )
    custom_router_path: str | None = Field(default=None, alias="CUSTOM_ROUTER_PATH")

    @field_validator("providers", "alternate_providers", mode="before")
    @classmethod
    def _coerce_provider_list(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [
            item for item in value if isinstance(item, (dict, ProviderConfig))
        ]

    def iter_providers(self) -> Iterator[ProviderConfig]:
        yield from self.providers
        yield from self.alternate_providers


def interpolate_env_vars(value: Any) -> Any:
    if isinstance(value, str):
        return _ENV_PLACEHOLDER.sub(_replace_env_placeholder, value)
    if isinstance(value, list):
        return [interpolate_env_vars(item) for item in value]
    if isinstance(value, dict):
        return {key: interpolate_env_vars(item) for key, item in value.items()}
    return value


def _replace_env_placeholder(match: re.Match[str]) -> str:
    env_name = match.group(1) or match.group(2)
    return os.environ.get(env_name, match.group(0))


def load_router_config(config_path: str | Path) -> RouterConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Router config not found at '{config_path}'. "
            "Create it or set ROUTER_CONFIG_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML or JSON object in '{config_path}'.")

    return RouterConfig.model_validate(interpolate_env_vars(raw))
