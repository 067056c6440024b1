from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from ccr_router.custom_router import (
    CustomRouterError,
    clear_custom_router_cache,
    load_custom_router,
    run_custom_router,
)


@pytest.fixture(autouse=True)
def _reset_custom_routers() -> Any:
    clear_custom_router_cache()
    yield
    clear_custom_router_cache()


def test_custom_router_module_is_loaded_once(tmp_path: Path) -> None:
    path = tmp_path / "router_module.py"
    path.write_text(
        "CALLS = []\n"
        "def router(request, config, context):\n"
        "    CALLS.append(request)\n"
        "    return 'a,b'\n",
        encoding="utf-8",
    )

    first = load_custom_router(str(path))
    second = load_custom_router(str(path))

    assert first is second
    assert asyncio.run(run_custom_router(str(path), "req", None, {})) == "a,b"


def test_missing_entrypoint_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "no_entrypoint.py"
    path.write_text("ROUTE = 'a,b'\n", encoding="utf-8")

    with pytest.raises(CustomRouterError, match="does not define"):
        load_custom_router(str(path))


def test_import_error_is_wrapped(tmp_path: Path) -> None:
    path = tmp_path / "broken.py"
    path.write_text("raise ImportError('nope')\n", encoding="utf-8")

    with pytest.raises(CustomRouterError, match="failed to import"):
        load_custom_router(str(path))


def test_non_string_results_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "numeric.py"
    path.write_text("def router(request, config, context):\n    return 7\n", encoding="utf-8")

    assert asyncio.run(run_custom_router(str(path), None, None, {})) is None
