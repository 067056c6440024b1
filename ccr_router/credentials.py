from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator, Protocol, Sequence

from ccr_router.config import ApiKeyOverride, ProviderConfig
from ccr_router.providers import ProviderTarget

if TYPE_CHECKING:
    from ccr_router.router_engine import RoutingRequest

logger = logging.getLogger("uvicorn.error")

__all__ = [
    "ApiKeyOverride",
    "AppliedOverride",
    "ProviderServiceLike",
    "apply_api_key_override",
    "apply_dynamic_api_key",
    "dynamic_api_key_scope",
    "effective_api_key",
    "restore_api_key_overrides",
]


class ProviderServiceLike(Protocol):
    def get_provider(self, name: str) -> Any: ...

    def update_provider(self, name: str, updates: dict[str, Any]) -> Any: ...


@dataclass(slots=True)
class AppliedOverride:
    target: ProviderTarget
    request_id: str


def effective_api_key(provider: ProviderConfig) -> str | None:
    stack = provider.credential_state.stack
    if stack:
        return stack[-1].new_key
    return provider.api_key


def _set_api_key(target: ProviderTarget, value: str | None) -> None:
    for ref in target.references:
        ref.api_key = value


def _notify_provider_service(
    provider_service: ProviderServiceLike | None,
    name: str,
    api_key: str | None,
) -> None:
    if provider_service is None:
        return
    try:
        if provider_service.get_provider(name) is not None:
            provider_service.update_provider(name, {"apiKey": api_key})
    except Exception as exc:
        logger.warning(
            "provider_service_update_failed provider=%s reason=%s", name, str(exc)
        )


def apply_api_key_override(
    target: ProviderTarget,
    token: str | None,
    request_id: str,
    provider_service: ProviderServiceLike | None = None,
) -> bool:
    if not isinstance(token, str) or not token.strip():
        return False

    state = target.primary.credential_state
    with state.lock:
        if effective_api_key(target.primary) == token:
            return False
        if not state.captured:
            state.static_api_key = target.primary.api_key
            state.captured = True
        state.stack.append(ApiKeyOverride(request_id=request_id, new_key=token))
        _set_api_key(target, token)

    _notify_provider_service(provider_service, target.name, token)
    return True


def apply_dynamic_api_key(
    request: RoutingRequest,
    targets: Sequence[ProviderTarget],
    provider_service: ProviderServiceLike | None = None,
) -> list[AppliedOverride]:
    if not targets or not isinstance(request.bearer_token, str):
        return []
    token = request.bearer_token.strip()
    if not token:
        return []

    overrides: list[AppliedOverride] = []
    for target in targets:
        if apply_api_key_override(
            target,
            token,
            request.request_id,
            provider_service=provider_service,
        ):
            overrides.append(
                AppliedOverride(target=target, request_id=request.request_id)
            )

    if overrides:
        request.dynamic_api_key_overrides.extend(overrides)
        logger.info(
            "dynamic_api_key_applied request_id=%s count=%d",
            request.request_id,
            len(overrides),
        )
    return overrides


def restore_api_key_overrides(
    overrides: Sequence[AppliedOverride],
    provider_service: ProviderServiceLike | None = None,
) -> int:
    """Pop the stack entries pushed for each override's request id.

    Entries are removed wherever they sit in the stack, so requests finishing
    out of order leave the remaining overrides intact. The credential falls
    back to the new top of the stack, or the captured static key.
    """
    removed = 0
    for override in overrides:
        target = override.target
        state = target.primary.credential_state
        with state.lock:
            before = len(state.stack)
            state.stack[:] = [
                entry
                for entry in state.stack
                if entry.request_id != override.request_id
            ]
            popped = before - len(state.stack)
            if not popped:
                continue
            removed += popped
            restored = state.stack[-1].new_key if state.stack else state.static_api_key
            _set_api_key(target, restored)
        _notify_provider_service(provider_service, target.name, restored)
    return removed


@contextmanager
def dynamic_api_key_scope(
    request: RoutingRequest,
    provider_service: ProviderServiceLike | None = None,
) -> Iterator[RoutingRequest]:
    """Restore every override recorded on ``request`` when the block exits."""
    try:
        yield request
    finally:
        overrides = list(request.dynamic_api_key_overrides)
        request.dynamic_api_key_overrides.clear()
        restore_api_key_overrides(overrides, provider_service=provider_service)
