#!/usr/bin/env python3
"""
API Client Probe
================

Performs one request through a configured client and prints the result.

Usage:
    python main.py --config clients.yaml --list
    python main.py --config clients.yaml github GET /users/octocat
    python main.py -c clients.yaml httpbin POST /post --data '{"a": 1}' --metrics
    python main.py -c clients.yaml httpbin GET /get --param page=2 --log-level DEBUG
    python main.py -c clients.yaml -s settings.yaml httpbin GET /get
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

# Ensure project root is in path
sys.path.insert(0, str(Path(__file__).parent))

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from api.models import APIRequest, APIResponse
from api.registry import ClientRegistry
from core.errors import APIError
from infra.config import LOG_LEVELS, ConfigError, ConfigManager
from infra.logging import configure_logging


console = Console()


def parse_params(pairs: Optional[List[str]]) -> Optional[Dict[str, str]]:
    """Turn ["k=v", ...] into a dict."""
    if not pairs:
        return None
    params: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Invalid --param '{pair}', expected key=value")
        params[key] = value
    return params


def parse_data(raw: Optional[str]) -> Any:
    """JSON body if it parses, otherwise the raw string."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def print_clients(registry: ClientRegistry) -> None:
    table = Table(title="Configured clients")
    table.add_column("Name", style="cyan")
    table.add_column("Base URL")
    table.add_column("Auth", style="dim")
    for name in registry.list_clients():
        client = registry.get_client(name)
        table.add_row(name, client.config.base_url, type(client.config.auth).__name__)
    console.print(table)


def print_response(response: APIResponse) -> None:
    style = "green" if response.ok else "yellow"
    title = f"{response.status} {response.reason}"
    if response.cached:
        title += " (cached)"
    subtitle = f"{response.timing.duration_ms:.1f}ms"

    if isinstance(response.data, (dict, list)):
        body = json.dumps(response.data, indent=2, default=str)
    elif isinstance(response.data, bytes):
        body = f"<{len(response.data)} bytes>"
    else:
        body = str(response.data) if response.data is not None else ""

    console.print(Panel(body, title=title, subtitle=subtitle, border_style=style))


def print_metrics(metrics: Dict[str, Any]) -> None:
    table = Table(title="Metrics")
    table.add_column("Section", style="cyan")
    table.add_column("Values")
    for section, values in metrics.items():
        table.add_row(section, ", ".join(f"{k}={v}" for k, v in values.items()))
    console.print(table)


async def run(args: argparse.Namespace) -> int:
    registry = ClientRegistry()
    try:
        registry.load_from_yaml(args.config)

        if args.list:
            print_clients(registry)
            return 0

        client = registry.get_client(args.client)
        if client is None:
            console.print(f"[bold red]Unknown client:[/bold red] {args.client}")
            return 1

        request = APIRequest(
            method=args.method.upper(),
            url=args.path,
            params=parse_params(args.param),
            data=parse_data(args.data),
            cache=False if args.no_cache else None,
        )

        try:
            response = await client.request(request)
        except APIError as e:
            console.print(f"[bold red]{type(e).__name__}:[/bold red] {e.message}")
            if e.response is not None:
                print_response(e.response)
            return 1

        print_response(response)
        if args.metrics:
            print_metrics(client.refresh_metrics().to_dict())
        return 0
    finally:
        await registry.aclose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Send one request through a configured API client"
    )
    parser.add_argument("client", nargs="?", help="Client name from the config file")
    parser.add_argument("method", nargs="?", default="GET", help="HTTP method")
    parser.add_argument("path", nargs="?", default="/", help="Path relative to the client base URL")
    parser.add_argument(
        "--config", "-c",
        default="clients.yaml",
        help="Path to client configuration file"
    )
    parser.add_argument(
        "--settings", "-s",
        default="settings.yaml",
        help="Path to process settings file (logging)"
    )
    parser.add_argument(
        "--param", "-p",
        action="append",
        metavar="KEY=VALUE",
        help="Query parameter (repeatable)"
    )
    parser.add_argument("--data", "-d", help="Request body (JSON or raw text)")
    parser.add_argument("--no-cache", action="store_true", help="Bypass the response cache")
    parser.add_argument("--metrics", "-m", action="store_true", help="Print client metrics afterwards")
    parser.add_argument("--list", action="store_true", help="List configured clients and exit")
    parser.add_argument(
        "--log-level", "-l",
        choices=LOG_LEVELS,
        help="Logging level (overrides the settings file)"
    )
    return parser


def logging_options(settings: ConfigManager, cli_level: Optional[str] = None) -> Dict[str, Any]:
    """configure_logging() keyword arguments from the settings file and the command line."""
    options = settings.logging_settings()
    return {
        "level": getattr(logging, cli_level or options.level),
        "log_dir": options.dir,
        "file": options.file,
        "max_bytes": options.max_bytes,
        "backup_count": options.backup_count,
    }


def main() -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()
    if not args.list and not args.client:
        parser.error("client is required unless --list is given")

    try:
        configure_logging(**logging_options(ConfigManager(args.settings), args.log_level))
    except ConfigError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        return 1
    logger = logging.getLogger("apiclient.main")

    try:
        return asyncio.run(run(args))
    except (ConfigError, argparse.ArgumentTypeError) as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    except Exception as e:
        logger.exception("Fatal error")
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
