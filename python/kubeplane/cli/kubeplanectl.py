#!/usr/bin/env python3
"""
kubeplane/cli/kubeplanectl.py

Operator CLI.

Usage examples:
  kubeplanectl serve --port 8080
  kubeplanectl import-account --file do-account.yaml
  kubeplanectl render --template kubeadm --values values.yaml

Settings (storage back end, template directory, ...) come from the same
KUBEPLANE_* environment variables the daemon reads.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Dict, List, NoReturn, Optional

import aiofiles
import yaml

from kubeplane.daemon import configure_logging, serve
from kubeplane.errors import InvalidRequestError
from kubeplane.models.account import CloudAccount
from kubeplane.models.settings import ControlPlaneSettings
from kubeplane.models.validator import validate_type
from kubeplane.storage.factory import build_store
from kubeplane.storage.repository import AccountRepository
from kubeplane.templates.manager import TemplateManager


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kubeplanectl",
        description="Kubernetes cluster provisioning control plane.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the control-plane HTTP daemon.")
    serve_parser.add_argument("--host", help="Bind address (default: KUBEPLANE_LISTEN_HOST).")
    serve_parser.add_argument("--port", type=int, help="Bind port (default: KUBEPLANE_LISTEN_PORT).")
    serve_parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Print rendered scripts instead of running them over SSH.",
    )
    serve_parser.set_defaults(func=_serve, is_async=False)

    account_parser = subparsers.add_parser(
        "import-account",
        help="Validate a cloud account YAML file and store it under accounts/<name>.",
    )
    account_parser.add_argument("--file", required=True, help="YAML with name, provider, credentials.")
    account_parser.set_defaults(func=_import_account, is_async=True)

    render_parser = subparsers.add_parser(
        "render", help="Render a script template with values from a YAML file."
    )
    render_parser.add_argument("--template", required=True, help="Template name, e.g. kubeadm.")
    render_parser.add_argument("--values", help="YAML mapping of template variables.")
    render_parser.add_argument(
        "--template-dir", help="Override directory (default: KUBEPLANE_TEMPLATE_DIR)."
    )
    render_parser.set_defaults(func=_render, is_async=True)

    return parser


def main(argv: Optional[List[str]] = None) -> NoReturn:
    args = build_parser().parse_args(argv)
    settings = ControlPlaneSettings()
    configure_logging(settings)

    try:
        if args.is_async:
            asyncio.run(args.func(args, settings))
        else:
            args.func(args, settings)
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(0)


def _serve(args: argparse.Namespace, settings: ControlPlaneSettings) -> None:
    updates: Dict[str, Any] = {}
    if args.host:
        updates["listen_host"] = args.host
    if args.port:
        updates["listen_port"] = args.port
    if args.dry_run:
        updates["dry_run"] = True
    serve(settings.model_copy(update=updates))


async def _read_yaml(path: str) -> Any:
    async with aiofiles.open(path, "r", encoding="utf-8") as fh:
        text = await fh.read()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise InvalidRequestError(f"{path}: invalid YAML: {exc}") from exc


async def _import_account(args: argparse.Namespace, settings: ControlPlaneSettings) -> None:
    account = validate_type(await _read_yaml(args.file), CloudAccount)
    # fail here rather than at provisioning time
    account.parsed_credentials()
    store = build_store(settings)
    try:
        await AccountRepository(store).put(account)
    finally:
        await store.close()
    print(f"Stored account {account.name!r} ({account.provider.value}).")


async def _render(args: argparse.Namespace, settings: ControlPlaneSettings) -> None:
    manager = await TemplateManager.init(args.template_dir or settings.template_dir)
    values: Dict[str, Any] = {}
    if args.values:
        loaded = await _read_yaml(args.values)
        if loaded is not None and not isinstance(loaded, dict):
            raise InvalidRequestError(f"{args.values}: expected a YAML mapping")
        values = loaded or {}
    sys.stdout.write(manager.render(args.template, values))


if __name__ == "__main__":
    main()
