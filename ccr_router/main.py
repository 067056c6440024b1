from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from ccr_router.config import RouterConfig, load_router_config
from ccr_router.credentials import dynamic_api_key_scope
from ccr_router.providers import ProviderService
from ccr_router.router_engine import RoutingRequest, route_request
from ccr_router.sessions import (
    SessionUsageCache,
    parse_session_usage,
    resolve_session_id,
)
from ccr_router.settings import get_settings
from ccr_router.token_utils import TokenEstimator

logger = logging.getLogger("uvicorn.error")


def _extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    api_key = request.headers.get("x-api-key", "").strip()
    return api_key or None


async def _read_json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:
        raise HTTPException(
            status_code=400, detail=f"Expected JSON body: {exc}"
        ) from exc

    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=400, detail="Expected a JSON object request body."
        )
    return payload


async def startup(app: FastAPI) -> None:
    settings = get_settings()
    routing_config = load_router_config(settings.router_config_path)
    app.state.settings = settings
    app.state.routing_config = routing_config
    app.state.provider_service = ProviderService.from_config(routing_config)
    app.state.session_cache = SessionUsageCache(
        max_sessions=settings.session_cache_max_sessions
    )
    app.state.token_estimator = TokenEstimator()
    logger.info(
        "startup complete router_config_path=%s providers=%d default_model=%s "
        "custom_router=%s",
        settings.router_config_path,
        len(app.state.provider_service.list_providers()),
        routing_config.router.default,
        bool(routing_config.custom_router_path),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    await startup(app)
    yield
    logger.info("shutdown complete")


app = FastAPI(
    title="ccr-router",
    description="Model routing and dynamic credential overlay for Anthropic-style requests.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/providers")
async def providers() -> dict[str, Any]:
    provider_service: ProviderService = app.state.provider_service
    return {
        "object": "list",
        "data": [
            {
                "name": provider.name,
                "api_base_url": provider.api_base_url,
                "models": list(provider.models),
            }
            for provider in provider_service.list_providers()
        ],
    }


@app.post("/v1/messages/route")
async def route_messages(request: Request) -> dict[str, Any]:
    payload = await _read_json_body(request)
    config: RouterConfig = app.state.routing_config
    provider_service: ProviderService = app.state.provider_service

    routing_request = RoutingRequest(
        body=payload,
        bearer_token=_extract_bearer_token(request),
    )
    with dynamic_api_key_scope(routing_request, provider_service=provider_service):
        decision = await route_request(
            routing_request,
            config,
            session_cache=app.state.session_cache,
            provider_service=provider_service,
            estimator=app.state.token_estimator,
        )
    logger.info(
        "route_decision request_id=%s session_id=%s token_count=%s model=%s "
        "reason=%s overrides=%d",
        routing_request.request_id,
        decision.session_id,
        decision.token_count,
        decision.model,
        decision.reason,
        decision.overrides_applied,
    )
    return {
        "request_id": routing_request.request_id,
        **decision.as_dict(),
        "system": payload.get("system"),
    }


@app.post("/v1/sessions/usage")
async def record_session_usage(request: Request) -> dict[str, Any]:
    """Record the usage an upstream response reported for a session.

    The payload carries the original request `metadata` and the response
    `usage`. The next request in the same session reads it back when it
    checks for long context.
    """
    payload = await _read_json_body(request)
    session_id = resolve_session_id(payload)
    if not session_id:
        raise HTTPException(
            status_code=400, detail="Expected metadata.user_id with a session id."
        )
    usage = parse_session_usage(payload.get("usage"))
    if usage is None:
        raise HTTPException(
            status_code=400, detail="Expected usage.input_tokens as an integer."
        )

    session_cache: SessionUsageCache = app.state.session_cache
    session_cache.put(session_id, usage)
    logger.info(
        "session_usage_recorded session_id=%s input_tokens=%d output_tokens=%d",
        session_id,
        usage.input_tokens,
        usage.output_tokens,
    )
    return {
        "session_id": session_id,
        "input_tokens": usage.input_tokens,
        "output_tokens": usage.output_tokens,
    }


@app.post("/v1/messages/count_tokens")
async def count_tokens(request: Request) -> dict[str, int]:
    payload = await _read_json_body(request)
    estimator: TokenEstimator = app.state.token_estimator
    return {
        "input_tokens": estimator.estimate(
            payload.get("messages"),
            payload.get("system", []),
            payload.get("tools"),
        )
    }


@app.exception_handler(FileNotFoundError)
async def config_missing_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "ccr_router.main:app",
        host=settings.router_host,
        port=settings.router_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
