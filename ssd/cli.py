#!/usr/bin/env python3
"""
ssd CLI entry point.

Parses arguments with argparse, loads ssd.yaml, and routes each subcommand
to its handler. Handlers return an exit code.
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from tabulate import tabulate  # type: ignore[import-untyped]

from ssd import __version__
from ssd.config.settings import RootConfig, ServiceConfig, load_config
from ssd.deployment.containers import ContainerOperations
from ssd.deployment.lock import acquire
from ssd.deployment.rollback import RollbackController
from ssd.deployment.scheduler import DependencyScheduler
from ssd.env_files import EnvFileManager, parse_assignment
from ssd.exceptions import ConfigurationError, SSDError
from ssd.logging_config import setup_logging
from ssd.models.deployment import DeployFailure, DeployOutcome
from ssd.provision import Provisioner
from ssd.remote.ssh import SSHClient
from ssd.scaffold import ScaffoldOptions, write_file

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_INVALID_ARGS = 2


class CommandContext:
    """Context passed to all commands with common resources."""

    def __init__(self, config_path: Optional[str] = None, verbose: bool = False):
        self.config_path = config_path
        self.verbose = verbose
        self._config: Optional[RootConfig] = None

    @property
    def config(self) -> RootConfig:
        if self._config is None:
            self._config = load_config(self.config_path)
        return self._config

    @property
    def base_dir(self) -> str:
        """Directory of ssd.yaml; build contexts are relative to it."""
        path = self.config_path or os.environ.get("SSD_CONFIG")
        if path:
            return str(Path(path).resolve().parent)
        return str(Path.cwd())

    def service(self, name: Optional[str]) -> ServiceConfig:
        return self.config.get_service(name)

    def remote(self, service: ServiceConfig) -> SSHClient:
        return SSHClient(service.server)

    def containers(self, service: ServiceConfig) -> ContainerOperations:
        return ContainerOperations(self.remote(service), service.stack_path)


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser."""
    parser = argparse.ArgumentParser(
        prog="ssd",
        description="ssd - agentless SSH deployment for Docker Compose stacks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create ssd.yaml
  ssd init --server myserver --domain example.com --port 3000

  # Deploy one service, or every service when omitted
  ssd deploy web
  ssd deploy

  # Roll back to the previous version
  ssd rollback web

  # Manage environment variables
  ssd env web set DATABASE_URL=postgres://db/app

Environment Variables:
  SSD_CONFIG   Path to ssd.yaml (default: ./ssd.yaml)
        """,
    )

    parser.add_argument("--config", default=None, help="Path to ssd.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-dir", default=None, help="Also write rotating log files here")
    parser.add_argument("--json-logs", action="store_true", help="Use JSON for log files")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    init_parser = subparsers.add_parser("init", help="Create ssd.yaml")
    init_parser.add_argument("-s", "--server", required=True, help="SSH host name")
    init_parser.add_argument("--stack", default=None, help="Stack path on the server")
    init_parser.add_argument("--service", default="app", help="Service name (default: app)")
    init_parser.add_argument("-d", "--domain", default=None, help="Domain for Traefik routing")
    init_parser.add_argument("--path", default=None, help="Path prefix for routing")
    init_parser.add_argument("-p", "--port", type=int, default=None, help="Container port")
    init_parser.add_argument("-f", "--force", action="store_true", help="Overwrite ssd.yaml")

    deploy_parser = subparsers.add_parser("deploy", help="Deploy a service (or all)")
    deploy_parser.add_argument("service", nargs="?", help="Service name (all when omitted)")

    for name, help_text in [
        ("restart", "Restart a service without rebuilding"),
        ("rollback", "Roll back to the previous version"),
        ("status", "Show container status"),
        ("config", "Show resolved configuration"),
    ]:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("service", nargs="?", help="Service name")

    logs_parser = subparsers.add_parser("logs", help="Show service logs")
    logs_parser.add_argument("service", nargs="?", help="Service name")
    logs_parser.add_argument("-f", "--follow", action="store_true", help="Follow log output")
    logs_parser.add_argument("-n", "--tail", type=int, default=100, help="Lines to show")

    env_parser = subparsers.add_parser("env", help="Manage service environment variables")
    env_parser.add_argument("service", help="Service name")
    env_subparsers = env_parser.add_subparsers(dest="env_command", help="Env commands")
    env_list = env_subparsers.add_parser("list", help="List variables (values masked)")
    env_list.add_argument("--reveal", action="store_true", help="Show values unmasked")
    env_set = env_subparsers.add_parser("set", help="Set KEY=VALUE")
    env_set.add_argument("assignment", help="KEY=VALUE")
    env_rm = env_subparsers.add_parser("rm", help="Remove a variable")
    env_rm.add_argument("key", help="Variable name")

    provision_parser = subparsers.add_parser("provision", help="Install Docker and Traefik")
    provision_parser.add_argument("--server", default=None, help="SSH host (default: from ssd.yaml)")
    provision_parser.add_argument("--email", default=None, help="Email for Let's Encrypt")

    subparsers.add_parser("version", help="Show version")

    return parser


def print_outcome(outcome: DeployOutcome) -> None:
    if isinstance(outcome, DeployFailure):
        print(f"Error: {outcome.describe()}", file=sys.stderr)
        return
    version = f"version {outcome.new_version}" if outcome.new_version is not None else "pre-built image"
    print(f"Deployed {outcome.service} ({version}, {outcome.strategy})")


def config_rows(services: Dict[str, ServiceConfig]) -> List[Dict[str, Any]]:
    rows = []
    for name in sorted(services):
        svc = services[name]
        rows.append(
            {
                "service": name,
                "server": svc.server,
                "stack": svc.stack_path,
                "image": svc.image_name,
                "domains": ",".join(svc.domains) or "-",
                "path": svc.path or "-",
                "port": svc.port,
                "https": "yes" if svc.https else "no",
                "strategy": svc.deploy_strategy.value,
                "depends_on": ",".join(svc.dependency_names) or "-",
            }
        )
    return rows


def format_table(rows: List[Dict[str, Any]]) -> str:
    if not rows:
        return "No services configured."
    columns = list(rows[0].keys())
    return tabulate([[row[c] for c in columns] for row in rows], headers=columns, tablefmt="simple")


async def cmd_deploy(ctx: CommandContext, args: argparse.Namespace) -> int:
    scheduler = DependencyScheduler(ctx.config, base_dir=ctx.base_dir)
    if args.service:
        outcomes = [await scheduler.deploy_service(args.service)]
    else:
        if not ctx.config.services:
            raise ConfigurationError("no services defined in ssd.yaml")
        outcomes = await scheduler.deploy_all()

    for outcome in outcomes:
        print_outcome(outcome)
    return EXIT_ERROR if any(isinstance(o, DeployFailure) for o in outcomes) else EXIT_SUCCESS


async def cmd_rollback(ctx: CommandContext, args: argparse.Namespace) -> int:
    service = ctx.service(args.service)
    print(f"Rolling back {service.name} on {service.server}...")
    controller = RollbackController(ctx.remote(service))
    try:
        version = await controller.rollback(service)
    except SSDError as e:
        print(f"Error: rollback of {service.name} failed at stage rollback: {e}", file=sys.stderr)
        return EXIT_ERROR
    print(f"Rolled back {service.name} to version {version}")
    return EXIT_SUCCESS


async def cmd_restart(ctx: CommandContext, args: argparse.Namespace) -> int:
    service = ctx.service(args.service)
    print(f"Restarting {service.name} on {service.server}...")
    with acquire(service.stack_path):
        await ctx.containers(service).restart_service(service.name)
    return EXIT_SUCCESS


async def cmd_status(ctx: CommandContext, args: argparse.Namespace) -> int:
    service = ctx.service(args.service)
    print(f"Status for {service.name} on {service.server}:\n")
    status = await ctx.containers(service).status()
    print(status.rstrip() or "No containers found")
    return EXIT_SUCCESS


async def cmd_logs(ctx: CommandContext, args: argparse.Namespace) -> int:
    service = ctx.service(args.service)
    await ctx.containers(service).logs(service.name, follow=args.follow, tail=args.tail)
    return EXIT_SUCCESS


async def cmd_config(ctx: CommandContext, args: argparse.Namespace) -> int:
    if args.service:
        services = {args.service: ctx.service(args.service)}
    else:
        services = ctx.config.all_services()
    print(format_table(config_rows(services)))
    return EXIT_SUCCESS


async def cmd_env(ctx: CommandContext, args: argparse.Namespace) -> int:
    if not args.env_command:
        print("Usage: ssd env <service> <set|list|rm> [...]", file=sys.stderr)
        return EXIT_INVALID_ARGS

    service = ctx.service(args.service)
    manager = EnvFileManager(ctx.containers(service), service)

    if args.env_command == "list":
        lines = await manager.list(reveal=args.reveal)
        print("\n".join(lines) if lines else f"No environment variables set for {service.name}")
    elif args.env_command == "set":
        try:
            key, value = parse_assignment(args.assignment)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_INVALID_ARGS
        await manager.set(key, value)
        print(f"Set {key} for service {service.name}")
    elif args.env_command == "rm":
        if await manager.remove(args.key):
            print(f"Removed {args.key} from service {service.name}")
        else:
            print(f"{args.key} is not set for service {service.name}")
    return EXIT_SUCCESS


async def cmd_provision(ctx: CommandContext, args: argparse.Namespace) -> int:
    server = args.server
    if not server:
        try:
            server = ctx.config.server
        except ConfigurationError:
            server = None
    if not server:
        print("Error: server not specified and not found in config", file=sys.stderr)
        print("Usage: ssd provision --server SERVER [--email EMAIL]", file=sys.stderr)
        return EXIT_INVALID_ARGS

    email = args.email or input("Enter email for Let's Encrypt: ").strip()
    if not email:
        print("Error: email cannot be empty", file=sys.stderr)
        return EXIT_INVALID_ARGS

    print(f"Provisioning {server}...")
    try:
        await Provisioner(SSHClient(server)).provision(email)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_INVALID_ARGS
    print(f"{server} provisioned: docker and Traefik are running")
    return EXIT_SUCCESS


def cmd_init(args: argparse.Namespace) -> int:
    options = ScaffoldOptions(
        server=args.server,
        stack=args.stack,
        service=args.service,
        domain=args.domain,
        path=args.path,
        port=args.port,
        force=args.force,
    )
    path = write_file(os.getcwd(), options)
    print(f"Created {path}")
    return EXIT_SUCCESS


COMMANDS = {
    "deploy": cmd_deploy,
    "rollback": cmd_rollback,
    "restart": cmd_restart,
    "status": cmd_status,
    "logs": cmd_logs,
    "config": cmd_config,
    "env": cmd_env,
    "provision": cmd_provision,
}


def route_command(ctx: CommandContext, args: argparse.Namespace) -> int:
    """
    Route command to appropriate handler.

    Args:
        ctx: Command context
        args: Parsed arguments

    Returns:
        Exit code
    """
    if args.command == "version":
        print(f"ssd {__version__}")
        return EXIT_SUCCESS
    if args.command == "init":
        return cmd_init(args)

    handler = COMMANDS.get(args.command)
    if handler is None:
        print(f"Error: Unknown command: {args.command}", file=sys.stderr)
        return EXIT_INVALID_ARGS
    return asyncio.run(handler(ctx, args))


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_SUCCESS

    setup_logging(
        console_level="DEBUG" if args.verbose else "INFO",
        log_dir=args.log_dir,
        use_json=args.json_logs,
    )

    ctx = CommandContext(config_path=args.config, verbose=args.verbose)

    try:
        return route_command(ctx, args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except SSDError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
