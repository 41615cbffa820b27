#!/usr/bin/env python3
"""Command-line entry points for billing operations.

Usage:
    python billing_cli.py --help
    python billing_cli.py run-cycle
    python billing_cli.py run-cycle --now 2026-01-01T00:00:00Z
    python billing_cli.py scheduler --interval 3600
    python billing_cli.py seed-plans
    python billing_cli.py reload-config
"""

from __future__ import annotations

import json
import os
import sys
import time
from typing import Optional

import click


def get_app():
    """Create the Flask application without its in-process scheduler."""
    os.environ["AUTOPAY_SCHEDULER_ENABLED"] = "false"
    from app import create_app
    return create_app()


# ---------------------------------------------------------------------------
# Click CLI Group
# ---------------------------------------------------------------------------

@click.group()
def cli():
    """Billing maintenance tools."""
    pass


@cli.command("run-cycle")
@click.option("--now", "now_raw", help="ISO-8601 timestamp to evaluate boundaries at")
def run_cycle(now_raw: Optional[str]):
    """Run one auto-pay, boundary and trial-warning pass."""
    from services.autopay import run_billing_cycle
    from utils import parse_datetime

    now = None
    if now_raw:
        now = parse_datetime(now_raw)
        if now is None:
            click.echo(f"Error: invalid timestamp {now_raw!r}", err=True)
            sys.exit(2)
    app = get_app()
    with app.app_context():
        result = run_billing_cycle(now)
    click.echo(json.dumps(result, indent=2, sort_keys=True))


@cli.command()
@click.option("--interval", type=int, help="Seconds between passes (default from config)")
def scheduler(interval: Optional[int]):
    """Run the billing scheduler in the foreground until interrupted."""
    from services.autopay import AutoPayScheduler

    app = get_app()
    worker = AutoPayScheduler(app, interval_seconds=interval)
    worker.start()
    click.echo(f"Scheduler running every {worker.interval_seconds}s, press Ctrl+C to stop")
    try:
        while worker.running:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("Stopping...")
    finally:
        worker.stop()


@cli.command("seed-plans")
def seed_plans_command():
    """Insert the default plans that do not exist yet."""
    from seed_data import seed_plans

    app = get_app()
    with app.app_context():
        added = seed_plans()
    click.echo(f"Plans added: {added}")


@cli.command("reload-config")
def reload_config_command():
    """Merge stored overrides and print the effective (masked) configuration."""
    from config import masked_config, reload_config

    app = get_app()
    reload_config(app)
    click.echo(json.dumps(masked_config(app), indent=2, sort_keys=True, default=str))


if __name__ == "__main__":
    cli()
