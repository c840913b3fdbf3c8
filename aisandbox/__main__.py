"""CLI entry point: python -m aisandbox deploy|destroy|status|list|check|bootstrap ..."""

from __future__ import annotations

import argparse
import json
import logging
import sys

from aisandbox.config import load_settings, validate_settings
from aisandbox.errors import AISandboxError, ConfigError
from aisandbox.models import ProvisionRequest

DEFAULT_PROVIDER = "linode"


def _load_settings_or_exit(path: str | None):
    try:
        return load_settings(path)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_deploy(args: argparse.Namespace) -> None:
    # Lazy import so --help is fast
    from aisandbox.orchestrator import provision
    from aisandbox.providers.registry import get_provider

    settings = _load_settings_or_exit(args.config)
    if args.ssh_attempts is not None:
        settings.provision.ssh_attempts = args.ssh_attempts
        try:
            validate_settings(settings)
        except ConfigError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    request = ProvisionRequest(
        model_id=args.model or settings.bootstrap.model_id,
        instance_type=args.type or settings.instance.type,
        region=args.region or settings.instance.region,
        image=args.image or settings.instance.image,
        label=args.label,
        root_pass=args.root_pass,
        ssh_key_path=args.ssh_key,
        settle_seconds=args.settle_seconds,
        skip_validation=args.skip_validation,
    )

    print(f"Deploying {request.model_id} on {request.instance_type} ({request.region})")
    print()

    try:
        provider = get_provider(DEFAULT_PROVIDER)
        result = provision(request, provider=provider, settings=settings)
    except (AISandboxError, OSError, ValueError) as e:
        # OSError and ValueError: local failures such as an unwritable state dir.
        print(f"\nDeployment failed: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nDeployment interrupted. Check `ai-sandbox list` for created instances.",
              file=sys.stderr)
        sys.exit(130)

    _print_deploy_result(result)


def _print_deploy_result(result) -> None:
    from rich.console import Console
    from rich.panel import Panel
    from rich.table import Table

    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Instance", f"{result.label} ({result.instance_id})")
    table.add_row("Address", result.instance_ip or "-")
    table.add_row("Model", result.model_id)
    table.add_row("Chat UI", result.ui_url or "-")
    table.add_row("API", result.api_url or "-")
    table.add_row("SSH", f"ssh root@{result.instance_ip}" if result.instance_ip else "-")
    table.add_row("Root password", result.root_pass)

    console.print()
    console.print(Panel(table, title="DEPLOYMENT RESULT", expand=False))
    if result.password_generated:
        console.print("[yellow]The root password was generated and is shown only once. "
                      "Save it now.[/yellow]")
    console.print(
        "[bold red]Security warning:[/bold red] both services are exposed WITHOUT "
        "authentication. Restrict ports 3000 and 8000 with a Cloud Firewall."
    )

    if result.caveats:
        console.print()
        console.print("[yellow]Notes:[/yellow]")
        for caveat in result.caveats:
            console.print(f"  • {caveat}")
        console.print("Model loading can take several minutes; see /etc/motd on the node "
                      "for the bootstrap outcome.")


def cmd_destroy(args: argparse.Namespace) -> None:
    from aisandbox.orchestrator import destroy
    from aisandbox.providers.registry import get_provider

    try:
        destroy(args.instance_id, provider=get_provider(DEFAULT_PROVIDER))
    except AISandboxError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    print(f"Destroyed instance {args.instance_id}")


def cmd_status(args: argparse.Namespace) -> None:
    from aisandbox.orchestrator import status
    from aisandbox.providers.registry import get_provider

    try:
        info = status(args.instance_id, provider=get_provider(DEFAULT_PROVIDER))
    except AISandboxError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(info, indent=2))
        return
    _print_status(info)


def _print_status(info: dict) -> None:
    from rich.console import Console
    from rich.table import Table

    console = Console()
    table = Table(title=f"Instance {info['instance_id']} ({info.get('label') or '-'})")
    table.add_column("Component", style="bold")
    table.add_column("Status")
    table.add_column("Endpoint")

    _add_status_row(table, "Instance", info.get("status", "unknown"), info.get("instance_ip") or "-")
    for key, label in (("ssh", "SSH"), ("ui", "Chat UI"), ("api", "API")):
        entry = info.get(key)
        if entry is None:
            _add_status_row(table, label, "unknown", "-")
        else:
            _add_status_row(table, label, entry["status"], entry.get("url", "-"))
    console.print(table)


def _add_status_row(table, component: str, status: str, endpoint: str) -> None:
    if status in ("running", "ready"):
        styled = f"[green]{status}[/green]"
    elif status in ("provisioning", "booting", "unknown"):
        styled = f"[yellow]{status}[/yellow]"
    else:
        styled = f"[red]{status}[/red]"
    table.add_row(component, styled, endpoint)


def cmd_list(args: argparse.Namespace) -> None:
    from aisandbox.state import list_records

    records = list_records()
    if not records:
        print("No deployments found.")
        return

    print(f"{'INSTANCE':<12} {'LABEL':<30} {'ADDRESS':<16} {'TYPE':<22} {'CREATED':<20}")
    print("-" * 100)
    for r in records:
        created = r.created_at[:19] if r.created_at else ""
        print(f"{r.instance_id:<12} {r.label:<30} {r.instance_ip or '-':<16} "
              f"{r.instance_type:<22} {created:<20}")


def cmd_check(args: argparse.Namespace) -> None:
    from aisandbox.providers.registry import get_provider

    result = get_provider(DEFAULT_PROVIDER).preflight()
    for check in result.checks:
        mark = "OK  " if check.passed else "FAIL"
        print(f"[{mark}] {check.message}")
        if not check.passed and check.fix_command:
            print(f"       fix: {check.fix_command}")
    if not result.ok:
        sys.exit(1)


def cmd_bootstrap(args: argparse.Namespace) -> None:
    from aisandbox.bootstrap import BootstrapConfig, configure_node_logging, run_bootstrap

    settings = _load_settings_or_exit(args.config)
    if args.require_core_health:
        settings.bootstrap.require_core_health = True

    config = BootstrapConfig(
        model_id=args.model_id or settings.bootstrap.model_id,
        settings=settings.bootstrap,
        public_address=args.public_address,
    )
    if args.status_file:
        config.status_file = args.status_file
    configure_node_logging(config.log_dir, logging.DEBUG if args.verbose else logging.INFO)

    state = run_bootstrap(config)
    if state.failed:
        sys.exit(1)


def cmd_render_manifest(args: argparse.Namespace) -> None:
    from pathlib import Path

    from aisandbox.manifest import TEMPLATE_FILENAME, build_inline_manifest, render_manifest
    from aisandbox.template_engine import read_template

    if args.inline:
        print(build_inline_manifest(args.model_id), end="")
        return
    if args.template:
        template = Path(args.template).read_text()
    else:
        template = read_template(TEMPLATE_FILENAME)
    print(render_manifest(template, args.model_id), end="")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="ai-sandbox",
        description="One-shot GPU inference sandbox (vLLM + Open WebUI)",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # -- deploy --
    p_deploy = subparsers.add_parser("deploy", help="Provision a GPU instance and deploy the stack")
    p_deploy.add_argument("--model", default=None,
                          help="Model id (e.g. mistralai/Mistral-7B-Instruct-v0.3)")
    p_deploy.add_argument("--type", default=None, help="Instance type (e.g. g2-gpu-rtx4000a1-s)")
    p_deploy.add_argument("--region", default=None, help="Region (e.g. us-ord)")
    p_deploy.add_argument("--image", default=None, help="Base image (e.g. linode/ubuntu22.04)")
    p_deploy.add_argument("--label", default=None, help="Instance label (default: timestamped)")
    p_deploy.add_argument("--root-pass", default=None,
                          help="Root password, 11-128 characters (default: generated)")
    p_deploy.add_argument("--ssh-key", default=None,
                          help="Public key file to authorize (default: first key in ~/.ssh)")
    p_deploy.add_argument("--settle-seconds", type=int, default=None,
                          help="Seconds to wait for bootstrap before validating")
    p_deploy.add_argument("--ssh-attempts", type=int, default=None,
                          help="SSH reachability attempts before moving on")
    p_deploy.add_argument("--skip-validation", action="store_true", default=False,
                          help="Do not probe the public endpoints after provisioning")
    p_deploy.add_argument("--config", default=None, help="Path to YAML settings file")
    p_deploy.set_defaults(func=cmd_deploy)

    # -- destroy --
    p_destroy = subparsers.add_parser("destroy", help="Delete an instance and its local record")
    p_destroy.add_argument("--instance-id", required=True)
    p_destroy.set_defaults(func=cmd_destroy)

    # -- status --
    p_status = subparsers.add_parser("status", help="Check instance and endpoint status")
    p_status.add_argument("--instance-id", required=True)
    p_status.add_argument("--json", action="store_true", default=False,
                          help="Print machine-readable JSON")
    p_status.set_defaults(func=cmd_status)

    # -- list --
    p_list = subparsers.add_parser("list", help="List local deployment records")
    p_list.set_defaults(func=cmd_list)

    # -- check --
    p_check = subparsers.add_parser("check", help="Validate provider credentials")
    p_check.set_defaults(func=cmd_check)

    # -- bootstrap --
    p_boot = subparsers.add_parser("bootstrap", help="Run the first-boot bootstrap on this node")
    p_boot.add_argument("--model-id", default=None)
    p_boot.add_argument("--require-core-health", action="store_true", default=False,
                        help="Fail the run if the API never becomes healthy")
    p_boot.add_argument("--public-address", default=None,
                        help="Address shown in the status file (default: metadata service)")
    p_boot.add_argument("--status-file", default=None, help="Status file (default: /etc/motd)")
    p_boot.add_argument("--config", default=None, help="Path to YAML settings file")
    p_boot.set_defaults(func=cmd_bootstrap)

    # -- render-manifest --
    p_manifest = subparsers.add_parser("render-manifest", help="Print the docker-compose manifest")
    p_manifest.add_argument("--model-id", required=True)
    p_manifest.add_argument("--template", default=None,
                            help="Template file (default: packaged template)")
    p_manifest.add_argument("--inline", action="store_true", default=False,
                            help="Synthesize the manifest without a template")
    p_manifest.set_defaults(func=cmd_render_manifest)

    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    if args.command != "bootstrap":
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
        )

    # Silence noisy third-party loggers unless --verbose
    if not args.verbose:
        for name in ("urllib3", "requests"):
            logging.getLogger(name).setLevel(logging.WARNING)

    args.func(args)


if __name__ == "__main__":
    main()
