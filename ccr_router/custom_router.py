from __future__ import annotations

import importlib.util
import inspect
from pathlib import Path
from threading import Lock
from typing import Any, Callable

CUSTOM_ROUTER_ENTRYPOINT = "router"

CustomRouter = Callable[..., Any]


class CustomRouterError(RuntimeError):
    """Raised when a custom router module cannot be loaded or fails to run."""


_cache_lock = Lock()
_loaded_routers: dict[str, CustomRouter] = {}


def load_custom_router(path: str) -> CustomRouter:
    """Load the ``router`` callable from a Python file, once per resolved path."""
    resolved = str(Path(path).expanduser().resolve())
    with _cache_lock:
        cached = _loaded_routers.get(resolved)
        if cached is not None:
            return cached

        module_path = Path(resolved)
        if not module_path.is_file():
            raise CustomRouterError(f"Custom router not found at '{path}'.")
        spec = importlib.util.spec_from_file_location(
            f"ccr_custom_router_{abs(hash(resolved))}", module_path
        )
        if spec is None or spec.loader is None:
            raise CustomRouterError(f"Cannot import custom router from '{path}'.")
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            raise CustomRouterError(
                f"Custom router '{path}' failed to import: {exc}"
            ) from exc

        router = getattr(module, CUSTOM_ROUTER_ENTRYPOINT, None)
        if not callable(router):
            raise CustomRouterError(
                f"Custom router '{path}' does not define a callable "
                f"'{CUSTOM_ROUTER_ENTRYPOINT}'."
            )
        _loaded_routers[resolved] = router
        return router


def clear_custom_router_cache() -> None:
    with _cache_lock:
        _loaded_routers.clear()


async def run_custom_router(
    path: str,
    request: Any,
    config: Any,
    context: dict[str, Any],
) -> str | None:
    router = load_custom_router(path)
    try:
        result = router(request, config, context)
        if inspect.isawaitable(result):
            result = await result
    except Exception as exc:
        raise CustomRouterError(f"Custom router '{path}' raised: {exc}") from exc
    if isinstance(result, str) and result.strip():
        return result
    return None
