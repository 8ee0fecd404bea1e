"""Command-line interface for webhook-balancer."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import urllib.request
from dataclasses import dataclass
from typing import Optional

from webhook_balancer.config import Config, EndpointConfig, load_config_or_default
from webhook_balancer.proxy.strategies import STRATEGIES


@dataclass
class ServeArgs:
    """Run the webhook relay."""
    config: str = "config.yaml"
    """Path to config file"""
    port: Optional[int] = None
    """Relay port (overrides config)"""
    strategy: Optional[str] = None
    """Load balancing strategy (overrides config)"""
    backends: tuple[str, ...] = ()
    """Extra backend specs: 'developer:service=url'"""


@dataclass
class BackendsArgs:
    """Show the configured developers and their service URLs."""
    config: str = "config.yaml"
    """Path to config file"""


@dataclass
class StatusArgs:
    """Show load balancer state of a running relay."""
    url: str = "http://localhost:6000"
    """Base URL of the running relay"""
    timeout: float = 3.0
    """Request timeout in seconds"""


def build_config(args: ServeArgs) -> Config:
    """Load the config file and apply command-line overrides."""
    from webhook_balancer.proxy.server import parse_backends

    config = load_config_or_default(args.config)
    data = config.model_dump()
    if args.port is not None:
        data["balancer"]["port"] = args.port
    if args.strategy is not None:
        data["balancer"]["strategy"] = args.strategy
    if args.backends:
        data["backends"].extend(parse_backends(list(args.backends)))
    return Config.model_validate(data)


def cmd_serve(args: ServeArgs):
    """Execute serve command."""
    from webhook_balancer.proxy.server import RelayServer

    config = build_config(args)
    if not config.backends:
        print("Warning: no developers configured; every webhook will get 503")

    server = RelayServer.from_config(config)

    async def run():
        await server.start()
        try:
            while True:
                await asyncio.sleep(3600)
        except asyncio.CancelledError:
            await server.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("\nShutting down...")


def format_backends(config: Config) -> list[str]:
    """Table lines: one per (developer, service) pair."""
    weights = config.get_weights()
    lines = [f"Strategy: {config.balancer.strategy}", "", "Developers:", "-" * 60]
    by_developer: dict[str, list[EndpointConfig]] = {}
    for record in config.backends:
        by_developer.setdefault(record.backend.lower(), []).append(record)
    if not by_developer:
        lines.append("  No developers configured")
    for developer, records in by_developer.items():
        lines.append(f"  {developer} (weight {weights.get(developer, 1)})")
        for record in records:
            lines.append(f"    {record.service.lower()}: {record.url or '(disabled)'}")
    return lines


def cmd_backends(args: BackendsArgs):
    """Execute backends command."""
    config = load_config_or_default(args.config)
    for line in format_backends(config):
        print(line)


def cmd_status(args: StatusArgs) -> int:
    """Execute status command."""
    url = f"{args.url.rstrip('/')}/load-balancer"
    try:
        with urllib.request.urlopen(url, timeout=args.timeout) as resp:
            data = json.loads(resp.read())
    except (OSError, ValueError) as e:
        print(f"Relay not reachable at {url}: {e}")
        return 1

    print(f"Strategy: {data.get('strategy')}")
    print("-" * 60)
    counts = data.get("request_counts", {})
    health = data.get("health_status", {})
    for developer in data.get("developers", []):
        print(f"  {developer}: {health.get(developer, 'healthy')}, {counts.get(developer, 0)} requests")
    print()
    return 0


def main():
    """Main entry point for webhook-balancer CLI."""
    parser = argparse.ArgumentParser(
        description="Load-balancing relay for Slack webhooks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the relay from a config file
  webhook-balancer serve --config config.yaml

  # Run with ad-hoc developers
  webhook-balancer serve --strategy sticky \\
      --backends alice:slack_app=https://alice-slack-app.ngrok-free.app

  # Show configured developers
  webhook-balancer backends --config config.yaml

  # Check a running relay
  webhook-balancer status --url http://localhost:6000
""",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the relay")
    serve_parser.add_argument("--config", default="config.yaml", help="Config file path")
    serve_parser.add_argument("--port", type=int, default=None, help="Relay port")
    serve_parser.add_argument("--strategy", choices=STRATEGIES, default=None, help="Load balancing strategy")
    serve_parser.add_argument("--backends", nargs="*", help="Backend specs: developer:service=url")

    # backends command
    backends_parser = subparsers.add_parser("backends", help="Show configured developers")
    backends_parser.add_argument("--config", default="config.yaml", help="Config file path")

    # status command
    status_parser = subparsers.add_parser("status", help="Show running relay state")
    status_parser.add_argument("--url", default="http://localhost:6000", help="Relay base URL")
    status_parser.add_argument("--timeout", type=float, default=3.0, help="Request timeout")

    args = parser.parse_args()

    if args.command == "serve":
        cmd_serve(ServeArgs(
            config=args.config,
            port=args.port,
            strategy=args.strategy,
            backends=tuple(args.backends or []),
        ))
    elif args.command == "backends":
        cmd_backends(BackendsArgs(config=args.config))
    elif args.command == "status":
        sys.exit(cmd_status(StatusArgs(url=args.url, timeout=args.timeout)))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
