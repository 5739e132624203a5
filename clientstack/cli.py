"""CLI entry point for clientstack."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys
from typing import Any, Sequence

from clientstack.config.loader import initialize_config, load_config
from clientstack.core.errors import HostingError
from clientstack.core.registry import REMOVAL_CONFIRMATION
from clientstack.core.service import HostingService


DEFAULT_CONFIG = Path(__file__).parent / "config" / "defaults.yml"


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="clientstack")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create starter config")
    init_parser.add_argument("--config", type=Path, default=Path("./config/clientstack.yml"))
    init_parser.add_argument("--force", action="store_true")

    serve_parser = subparsers.add_parser("serve", help="Run the deployment webhook server")
    serve_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--port", type=int, default=None)

    create_parser = subparsers.add_parser("create", help="Create a client environment")
    create_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)
    create_parser.add_argument("client")
    create_parser.add_argument("environment")
    create_parser.add_argument("--domain", type=str, default=None, help="Override the derived domain")

    list_parser = subparsers.add_parser("list", help="List clients and environments")
    list_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)
    list_parser.add_argument("client", nargs="?", default=None)

    status_parser = subparsers.add_parser("status", help="Show hosting status")
    status_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)

    remove_parser = subparsers.add_parser("remove", help="Remove a client environment")
    remove_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)
    remove_parser.add_argument("client")
    remove_parser.add_argument("environment")
    remove_parser.add_argument(
        "--confirm",
        action="store_true",
        help=f"Skip the interactive prompt and confirm with '{REMOVAL_CONFIRMATION}'",
    )

    deploy_test_parser = subparsers.add_parser("deploy-test", help="Run the deployment pipeline once")
    deploy_test_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)
    deploy_test_parser.add_argument("client")
    deploy_test_parser.add_argument("environment")

    workflow_parser = subparsers.add_parser("workflow", help="Generate a GitHub Actions deploy workflow")
    workflow_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)
    workflow_parser.add_argument("client")
    workflow_parser.add_argument("environment")
    workflow_parser.add_argument("webhook_url", help="Public base URL of the webhook server")
    workflow_parser.add_argument("--output", type=Path, default=None)

    logs_parser = subparsers.add_parser("logs", help="Show the latest deployment log")
    logs_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)
    logs_parser.add_argument("client")
    logs_parser.add_argument("environment")
    logs_parser.add_argument("--lines", type=int, default=50)

    proxy_sync_parser = subparsers.add_parser("proxy-sync", help="Rewrite middleware chains for every environment")
    proxy_sync_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)

    proxy_list_parser = subparsers.add_parser("proxy-list", help="List dynamic proxy configuration files")
    proxy_list_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG)

    return parser


def _service(config_path: Path) -> HostingService:
    return HostingService(load_config(config_path))


def cmd_init(config_path: Path, force: bool) -> int:
    initialize_config(config_path, force=force)
    print(f"wrote config: {config_path}")
    return 0


def cmd_serve(config_path: Path, *, host: str | None, port: int | None) -> int:
    config = load_config(config_path)
    from clientstack.api.webhook import create_app
    import uvicorn

    service = HostingService(config)
    try:
        app = create_app(service)
        uvicorn.run(
            app,
            host=host or config.api.host,
            port=int(port or config.api.port),
            log_level=config.logging.level.lower(),
        )
    finally:
        service.close()
    return 0


def cmd_create(config_path: Path, client: str, environment: str, *, domain: str | None) -> int:
    service = _service(config_path)
    try:
        _print(service.create(client, environment, domain))
    finally:
        service.close()
    return 0


def cmd_list(config_path: Path, client: str | None) -> int:
    service = _service(config_path)
    try:
        _print([summary.to_dict() for summary in service.list(client)])
    finally:
        service.close()
    return 0


def cmd_status(config_path: Path) -> int:
    service = _service(config_path)
    try:
        _print(service.status())
    finally:
        service.close()
    return 0


def cmd_remove(config_path: Path, client: str, environment: str, *, confirm: bool) -> int:
    service = _service(config_path)
    try:
        if confirm:
            confirmation = REMOVAL_CONFIRMATION
        else:
            print(f"This permanently deletes {client}/{environment}, its data volumes and its deployment token.")
            confirmation = input(f"Type {REMOVAL_CONFIRMATION} to confirm: ").strip()
        _print(service.remove(client, environment, confirmation))
    finally:
        service.close()
    return 0


def cmd_deploy_test(config_path: Path, client: str, environment: str) -> int:
    service = _service(config_path)
    try:
        result = service.deploy_test(client, environment)
        _print({**result.to_response(), "deployment": result.record.to_dict()})
    finally:
        service.close()
    return 0 if result.ok else 1


def cmd_workflow(config_path: Path, client: str, environment: str, webhook_url: str, *, output: Path | None) -> int:
    service = _service(config_path)
    try:
        workflow = service.generate_trigger_descriptor(client, environment, webhook_url)
    finally:
        service.close()
    if output is None:
        sys.stdout.write(workflow)
        return 0
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(workflow, encoding="utf-8")
    _print({"output": str(output), "format": "github-actions"})
    return 0


def cmd_logs(config_path: Path, client: str, environment: str, *, lines: int) -> int:
    service = _service(config_path)
    try:
        _print(service.deployment_logs(client, environment, lines))
    finally:
        service.close()
    return 0


def cmd_proxy_sync(config_path: Path) -> int:
    service = _service(config_path)
    try:
        report = service.resync_policies()
    finally:
        service.close()
    _print(report)
    return 1 if report["failed"] else 0


def cmd_proxy_list(config_path: Path) -> int:
    service = _service(config_path)
    try:
        _print(service.list_policies())
    finally:
        service.close()
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "init":
            return cmd_init(args.config, args.force)
        if args.command == "serve":
            return cmd_serve(args.config, host=args.host, port=args.port)
        if args.command == "create":
            return cmd_create(args.config, args.client, args.environment, domain=args.domain)
        if args.command == "list":
            return cmd_list(args.config, args.client)
        if args.command == "status":
            return cmd_status(args.config)
        if args.command == "remove":
            return cmd_remove(args.config, args.client, args.environment, confirm=args.confirm)
        if args.command == "deploy-test":
            return cmd_deploy_test(args.config, args.client, args.environment)
        if args.command == "workflow":
            return cmd_workflow(args.config, args.client, args.environment, args.webhook_url, output=args.output)
        if args.command == "logs":
            return cmd_logs(args.config, args.client, args.environment, lines=args.lines)
        if args.command == "proxy-sync":
            return cmd_proxy_sync(args.config)
        if args.command == "proxy-list":
            return cmd_proxy_list(args.config)
    except HostingError as exc:
        _print({"error": exc.to_dict()})
        return 1

    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
