from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Callable, cast

import yaml

from ccr_router.config import load_router_config
from ccr_router.credentials import dynamic_api_key_scope
from ccr_router.providers import ProviderService, collect_provider_targets
from ccr_router.router_engine import RoutingRequest, route_request
from ccr_router.sessions import SessionUsage, SessionUsageCache, resolve_session_id

DEFAULT_CONFIG_PATH = "config.yaml"


def _read_payload(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"Expected JSON object in '{path}'.")
    return data


def _add_config_path_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--path", default=DEFAULT_CONFIG_PATH)


def cmd_validate_config(args: argparse.Namespace) -> int:
    config = load_router_config(args.path)
    targets = collect_provider_targets(config)
    print(f"Router config is valid: {args.path}")
    print(
        yaml.safe_dump(
            {
                "default_model": config.router.default,
                "providers": [
                    {"name": target.name, "references": len(target.references)}
                    for target in targets
                ],
            },
            sort_keys=False,
        ).rstrip()
    )
    return 0


def cmd_explain_route(args: argparse.Namespace) -> int:
    config = load_router_config(args.path)
    body = _read_payload(Path(args.payload))
    provider_service = ProviderService.from_config(config)

    session_cache = SessionUsageCache()
    request = RoutingRequest(body=body, bearer_token=args.bearer_token)

    async def _run() -> dict[str, Any]:
        with dynamic_api_key_scope(request, provider_service=provider_service):
            if args.session_input_tokens is not None:
                session_cache.put(
                    resolve_session_id(body),
                    SessionUsage(input_tokens=args.session_input_tokens),
                )
            decision = await route_request(
                request,
                config,
                session_cache=session_cache,
                provider_service=provider_service,
            )
            return decision.as_dict()

    result = asyncio.run(_run())
    print(yaml.safe_dump(result, sort_keys=False).rstrip())
    return 0


def cmd_serve(_: argparse.Namespace) -> int:
    from ccr_router.main import run

    run()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ccr-router",
        description="Routing diagnostics and server for ccr-router.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_cmd = subparsers.add_parser(
        "validate-config",
        help="Validate a router config and list the resolved provider targets.",
    )
    _add_config_path_argument(validate_cmd)
    validate_cmd.set_defaults(handler=cmd_validate_config)

    explain_cmd = subparsers.add_parser(
        "explain-route",
        help="Route a JSON messages payload and print the decision.",
    )
    _add_config_path_argument(explain_cmd)
    explain_cmd.add_argument("--payload", required=True)
    explain_cmd.add_argument("--bearer-token", default=None)
    explain_cmd.add_argument(
        "--session-input-tokens",
        type=int,
        default=None,
        help="Pretend the payload's session last reported this many input tokens.",
    )
    explain_cmd.set_defaults(handler=cmd_explain_route)

    serve_cmd = subparsers.add_parser("serve", help="Run the HTTP router.")
    serve_cmd.set_defaults(handler=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except Exception as exc:  # pragma: no cover - covered via CLI tests
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
