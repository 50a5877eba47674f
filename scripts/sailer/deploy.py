#!/usr/bin/env python3
"""Deploy a Git repository as a container behind nginx.

Usage:
  sailer deploy https://github.com/acme/app.git app.example.com
  sailer deploy git@gitlab.example.com:team/api.git api.example.com --path backend --service mysql
  sailer list
  sailer services info mysql
  sailer validate

Deploying to a domain that already has a deployment updates that deployment
(same id, volume and host port) instead of creating a second one.

Configuration comes from SAILER_* environment variables and the dotenv file
named by SAILER_ENV_FILE (default: ~/.sailer/.env).

Security note: this script shells out to `docker`, `git` and the nginx reload command.
"""

from __future__ import annotations

import argparse
import sys

import requests

from scripts.sailer.deploy_hooks import load_hooks
from scripts.sailer.deployer import Deployer, DeployRequest
from scripts.sailer.errors import DeployError
from scripts.sailer.master_client import MasterClient
from scripts.sailer.settings import Settings, SettingsValidationError, load_settings
from scripts.sailer.state_store import StateStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sailer", description="Deploy Git repositories as containers behind nginx")
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Create or update the deployment bound to a domain")
    deploy.add_argument("repo", help="Repository URL (https, http, ssh, git or user@host:path)")
    deploy.add_argument("domain", help="Domain name the deployment is served under")
    deploy.add_argument("--ssl", action="store_true", help="Reserved: TLS certificates are not provisioned yet")
    deploy.add_argument(
        "--port",
        type=int,
        default=None,
        help="Container port to publish (default: first port EXPOSEd by the image)",
    )
    deploy.add_argument(
        "--path",
        dest="relative_path",
        default=None,
        help="Build context relative to the repository root (default: repository root)",
    )
    deploy.add_argument(
        "--service",
        dest="services",
        action="append",
        default=[],
        help="Attach an auxiliary service by name or uid (repeatable)",
    )
    deploy.add_argument(
        "--skip-domain-check",
        action="store_true",
        help="Only warn when the domain does not look like a valid FQDN",
    )
    deploy.add_argument(
        "--hooks",
        default=None,
        help="Hooks module (file path or dotted name). Resolution: CLI -> SAILER_HOOKS_MODULE",
    )

    sub.add_parser("list", help="List deployments known to this host")

    services = sub.add_parser("services", help="Auxiliary services")
    services_sub = services.add_subparsers(dest="services_command", required=True)
    info = services_sub.add_parser("info", help="Show master server information for a service")
    info.add_argument("name")

    sub.add_parser("validate", help="Validate sailer settings")
    return parser


def _master_from_settings(settings: Settings) -> MasterClient:
    return MasterClient(base_url=settings.master_url, token=settings.master_token, insecure=settings.master_insecure)


def _cmd_deploy(args: argparse.Namespace, settings: Settings) -> int:
    if args.port is not None and not (1 <= args.port <= 65535):
        raise SystemExit("--port must be in range 1-65535")

    hooks = load_hooks(args.hooks or settings.hooks_module, soft_fail=settings.hooks_soft_fail)
    deployer = Deployer.from_settings(settings, hooks=hooks)
    request = DeployRequest(
        repo=args.repo,
        domain=args.domain,
        ssl=args.ssl,
        port=args.port,
        relative_path=args.relative_path,
        services=tuple(args.services),
        check_domain=not args.skip_domain_check,
    )
    try:
        state = deployer.deploy(request)
    except DeployError:
        # Already reported by the deployer.
        return 1

    print(f"[sailer] {request.domain} -> {state.deployment_id} (127.0.0.1:{state.host_port})")
    if state.registration_failed:
        print("[sailer] ⚠️  Deployment is live but its registration is stale.", file=sys.stderr)
    return 0


def _cmd_list(settings: Settings) -> int:
    containers = StateStore(settings.state_file).containers()
    if not containers:
        print("[sailer] No deployments.")
        return 0
    for entry in containers.values():
        if not isinstance(entry, dict):
            continue
        port = entry.get("port") or "?"
        print(f"{entry.get('domain')}\t{entry.get('uid')}\t127.0.0.1:{port}\t{entry.get('repo')}")
    return 0


def _cmd_service_info(args: argparse.Namespace, settings: Settings) -> int:
    master = _master_from_settings(settings)
    if not master.is_linked():
        raise SystemExit("No master server configured: set SAILER_MASTER_URL")
    try:
        payload = master.service_info(name=args.name)
    except requests.RequestException as e:
        raise SystemExit(f"[sailer] Cannot fetch service info for '{args.name}': {e}")
    if isinstance(payload, dict):
        for key, value in payload.items():
            print(f"{key}: {value}")
    else:
        print(payload)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except SettingsValidationError as e:
        print(e.format(), file=sys.stderr)
        return 2

    if args.command == "deploy":
        return _cmd_deploy(args, settings)
    if args.command == "list":
        return _cmd_list(settings)
    if args.command == "services":
        return _cmd_service_info(args, settings)
    print("[sailer] settings ok")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
