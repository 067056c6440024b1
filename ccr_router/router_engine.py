from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from ccr_router.config import RouterConfig
from ccr_router.credentials import (
    AppliedOverride,
    ProviderServiceLike,
    apply_dynamic_api_key,
)
from ccr_router.custom_router import CustomRouterError, run_custom_router
from ccr_router.providers import collect_provider_targets, find_provider
from ccr_router.request_mutator import (
    apply_model,
    extract_subagent_model,
    rewrite_system_prompt,
)
from ccr_router.sessions import SessionUsage, SessionUsageCache, resolve_session_id
from ccr_router.token_utils import TokenEstimator, is_declared

logger = logging.getLogger("uvicorn.error")

COMPOUND_MODEL_SEPARATOR = ","
BACKGROUND_MODEL_PREFIX = "claude-3-5-haiku"
WEB_SEARCH_TOOL_PREFIX = "web_search"
SESSION_LONG_CONTEXT_MIN_TOKENS = 20_000


@dataclass(slots=True)
class RoutingRequest:
    body: dict[str, Any]
    bearer_token: str | None = None
    request_id: str = field(default_factory=lambda: uuid4().hex)
    session_id: str | None = None
    token_count: int | None = None
    dynamic_api_key_overrides: list[AppliedOverride] = field(default_factory=list)

    @property
    def requested_model(self) -> str | None:
        model = self.body.get("model")
        return model if isinstance(model, str) else None


@dataclass(slots=True)
class RouteDecision:
    model: str
    reason: str
    token_count: int | None = None
    session_id: str | None = None
    overrides_applied: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "reason": self.reason,
            "token_count": self.token_count,
            "session_id": self.session_id,
            "overrides_applied": self.overrides_applied,
        }


__all__ = [
    "RouteDecision",
    "RoutingRequest",
    "route_request",
    "select_model",
]


def select_model(
    request: RoutingRequest,
    token_count: int,
    config: RouterConfig,
    last_usage: SessionUsage | None = None,
) -> str:
    model, _ = _select_model_with_reason(request, token_count, config, last_usage)
    return model


def _select_model_with_reason(
    request: RoutingRequest,
    token_count: int,
    config: RouterConfig,
    last_usage: SessionUsage | None,
) -> tuple[str, str]:
    policy = config.router
    requested_model = request.requested_model

    if requested_model and COMPOUND_MODEL_SEPARATOR in requested_model:
        return _resolve_compound_model(requested_model, config)

    threshold = policy.effective_long_context_threshold
    session_over_threshold = (
        last_usage is not None
        and last_usage.input_tokens > threshold
        and token_count > SESSION_LONG_CONTEXT_MIN_TOKENS
    )
    if (session_over_threshold or token_count > threshold) and policy.long_context:
        logger.info(
            "long_context_route request_id=%s token_count=%d threshold=%d model=%s",
            request.request_id,
            token_count,
            threshold,
            policy.long_context,
        )
        return policy.long_context, "long_context"

    subagent_model = extract_subagent_model(request.body)
    if subagent_model is not None:
        return subagent_model, "subagent"

    if (
        requested_model
        and requested_model.startswith(BACKGROUND_MODEL_PREFIX)
        and policy.background
    ):
        logger.info(
            "background_route request_id=%s requested_model=%s model=%s",
            request.request_id,
            requested_model,
            policy.background,
        )
        return policy.background, "background"

    thinking = request.body.get("thinking")
    if is_declared(thinking) and policy.think:
        logger.info(
            "think_route request_id=%s thinking=%s model=%s",
            request.request_id,
            thinking,
            policy.think,
        )
        return policy.think, "think"

    if policy.web_search and _has_web_search_tool(request.body.get("tools")):
        return policy.web_search, "web_search"

    return policy.default, "default"


def _resolve_compound_model(requested_model: str, config: RouterConfig) -> tuple[str, str]:
    provider_name, model_name = requested_model.split(COMPOUND_MODEL_SEPARATOR)[:2]
    provider = find_provider(config, provider_name)
    if provider is not None:
        model = provider.find_model(model_name)
        if model is not None:
            return f"{provider.name}{COMPOUND_MODEL_SEPARATOR}{model}", "explicit"
    return requested_model, "explicit_passthrough"


def _has_web_search_tool(tools: Any) -> bool:
    if not isinstance(tools, list):
        return False
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        tool_type = tool.get("type")
        if isinstance(tool_type, str) and tool_type.startswith(WEB_SEARCH_TOOL_PREFIX):
            return True
    return False


async def route_request(
    request: RoutingRequest,
    config: RouterConfig,
    *,
    session_cache: SessionUsageCache | None = None,
    provider_service: ProviderServiceLike | None = None,
    estimator: TokenEstimator | None = None,
    event: Any = None,
) -> RouteDecision:
    """Pick the model for ``request`` and write it onto ``request.body``.

    Credential overrides pushed here are recorded on
    ``request.dynamic_api_key_overrides``; restoring them is the caller's job
    (see ``credentials.dynamic_api_key_scope``). This coroutine never raises
    for routing failures: the configured default model is used instead.
    """
    body = request.body

    overrides = apply_dynamic_api_key(
        request,
        collect_provider_targets(config),
        provider_service=provider_service,
    )

    session_id = resolve_session_id(body)
    if session_id is not None:
        request.session_id = session_id
    last_usage = (
        session_cache.get(request.session_id) if session_cache is not None else None
    )

    await rewrite_system_prompt(body, config.rewrite_system_prompt)

    estimator = estimator or TokenEstimator()
    token_count: int | None = None
    try:
        token_count = estimator.estimate(
            body.get("messages"),
            body.get("system", []),
            body.get("tools"),
        )
        request.token_count = token_count

        model: str | None = None
        reason = "custom_router"
        if config.custom_router_path:
            try:
                model = await run_custom_router(
                    config.custom_router_path,
                    request,
                    config,
                    {"event": event},
                )
            except CustomRouterError as exc:
                logger.error(
                    "custom_router_failed request_id=%s path=%s reason=%s",
                    request.request_id,
                    config.custom_router_path,
                    str(exc),
                )
        if not model:
            model, reason = _select_model_with_reason(
                request, token_count, config, last_usage
            )
    except Exception as exc:
        logger.error(
            "router_error request_id=%s reason=%s", request.request_id, str(exc)
        )
        model, reason = config.router.default, "router_error"

    apply_model(body, model)
    return RouteDecision(
        model=model,
        reason=reason,
        token_count=token_count,
        session_id=request.session_id,
        overrides_applied=len(overrides),
    )
