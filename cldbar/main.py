"""Entry point for the cldbar usage engine."""

from __future__ import annotations

import argparse
import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cldbar.api.server import build_engine
from cldbar.config import settings
from cldbar.errors import UsageError
from cldbar.token_tracker.engine import UsageEngine
from cldbar.token_tracker.models import RateLimitWindow

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)


def _engine() -> UsageEngine:
    return build_engine(settings)


def _pick_profiles(engine: UsageEngine, profile_id: str | None) -> list[str]:
    if profile_id:
        return [engine.profile(profile_id).id]
    return [p.id for p in engine.registry.enabled()]


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel("Starting cldbar API server", style="bold green"))
    uvicorn.run(
        "cldbar.api.server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def show_stats(profile_id: str | None) -> None:
    """Print aggregate usage per profile."""
    engine = _engine()
    for pid in _pick_profiles(engine, profile_id):
        with console.status(f"[bold green]Scanning {pid}..."):
            stats = engine.get_usage_stats(pid)
            active = engine.get_active_sessions(pid)

        table = Table(title=f"{pid} ({stats.provider})")
        table.add_column("Model")
        table.add_column("Input", justify="right")
        table.add_column("Output", justify="right")
        table.add_column("Cache read", justify="right")
        table.add_column("Cache write", justify="right")
        table.add_column("Cost", justify="right")
        for usage in sorted(stats.model_breakdown.values(), key=lambda m: m.model):
            table.add_row(
                usage.model,
                f"{usage.input_tokens:,}",
                f"{usage.output_tokens:,}",
                f"{usage.cache_read_tokens:,}",
                f"{usage.cache_write_tokens:,}",
                f"${usage.cost_usd:.2f}",
            )
        console.print(table)
        console.print(
            f"[dim]Sessions: {stats.total_sessions} ({len(active)} active) | "
            f"Messages: {stats.total_messages} | Est. cost: ${stats.estimated_cost_usd:.2f}[/dim]\n"
        )


def show_daily(profile_id: str | None, days: int) -> None:
    engine = _engine()
    for pid in _pick_profiles(engine, profile_id):
        table = Table(title=f"{pid}: last {days} active days")
        table.add_column("Date")
        table.add_column("Input", justify="right")
        table.add_column("Output", justify="right")
        table.add_column("Sessions", justify="right")
        table.add_column("Messages", justify="right")
        for d in engine.get_daily_usage(pid, days):
            table.add_row(
                d.date, f"{d.input_tokens:,}", f"{d.output_tokens:,}",
                str(d.sessions), str(d.messages),
            )
        console.print(table)


def _window_line(window: RateLimitWindow | None) -> str:
    if window is None:
        return "[dim]n/a[/dim]"
    pct = window.display_utilization
    color = "red" if pct >= 90 else "yellow" if pct >= 70 else "green"
    resets = f" (resets {window.resets_at})" if window.resets_at else ""
    return f"[{color}]{window.utilization:.0f}%[/{color}]{resets}"


def show_limits(profile_id: str | None) -> None:
    engine = _engine()
    for pid in _pick_profiles(engine, profile_id):
        status = engine.get_rate_limit_status(pid)
        if not status.available:
            console.print(f"[bold]{pid}[/bold]: [dim]no rate-limit telemetry[/dim]")
            continue
        console.print(
            Panel(
                f"5-hour:     {_window_line(status.five_hour)}\n"
                f"7-day:      {_window_line(status.seven_day)}\n"
                f"7-day Opus: {_window_line(status.seven_day_opus)}",
                title=pid,
            )
        )


def validate_key(provider_type: str, api_key: str) -> int:
    engine = _engine()
    check = engine.validate_api_key(provider_type, api_key)
    if check.valid is True:
        console.print("[bold green]Key is valid[/bold green]")
        return 0
    if check.valid is False:
        console.print(f"[bold red]Key rejected[/bold red] ({check.reason})")
        return 1
    console.print(f"[yellow]Could not verify key[/yellow] ({check.reason})")
    return 2


def main() -> None:
    parser = argparse.ArgumentParser(description="cldbar usage aggregation engine")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the API server")

    stats_parser = sub.add_parser("stats", help="Show usage totals")
    stats_parser.add_argument("--profile", help="Profile id (default: all enabled)")

    daily_parser = sub.add_parser("daily", help="Show daily usage")
    daily_parser.add_argument("--profile", help="Profile id (default: all enabled)")
    daily_parser.add_argument("--days", type=int, default=7)

    limits_parser = sub.add_parser("limits", help="Show rate-limit windows")
    limits_parser.add_argument("--profile", help="Profile id (default: all enabled)")

    key_parser = sub.add_parser("validate-key", help="Check an Admin API key")
    key_parser.add_argument("api_key")
    key_parser.add_argument("--provider", default="claude")

    args = parser.parse_args()

    try:
        if args.command == "serve":
            run_server()
        elif args.command == "stats":
            show_stats(args.profile)
        elif args.command == "daily":
            show_daily(args.profile, args.days)
        elif args.command == "limits":
            show_limits(args.profile)
        elif args.command == "validate-key":
            sys.exit(validate_key(args.provider, args.api_key))
        else:
            parser.print_help()
            sys.exit(1)
    except UsageError as e:
        console.print(f"[bold red]{e.kind}[/bold red]: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
