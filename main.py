#!/usr/bin/env python3
"""Pulse Alert Monitor - CLI Entry Point."""
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.table import Table

from __version__ import __version__

console = Console()

SEVERITY_STYLE = {
    "critical": "bold red",
    "high": "red",
    "medium": "yellow",
    "low": "cyan",
    "info": "dim",
}

STATUS_STYLE = {
    "pending": "yellow",
    "firing": "bold red",
    "acknowledged": "magenta",
    "silenced": "dim",
    "resolved": "green",
}


def _init_components(config_path=None, verbose=False):
    """Lazy initialization of all components."""
    from utils.logger import setup_logging
    from config import load_config
    from models.database import Database
    from alerts.rules_manager import RulesManager
    from alerts.fingerprint import FingerprintIndex
    from alerts.lifecycle import AlertLifecycleManager
    from alerts.evaluation import EvaluationEngine
    from monitor.evaluator import PrometheusEvaluator
    from monitor.scheduler import RuleScheduler

    config = load_config(config_path)
    log_cfg = config["logging"]
    setup_logging("DEBUG" if verbose else log_cfg.get("level", "INFO"), log_cfg.get("file"))

    db = Database(config["database"]["path"])
    db.connect()

    rules = RulesManager(config["rules"]["path"])
    index = FingerprintIndex(db)
    index.load()
    lifecycle = AlertLifecycleManager(db, index)
    evaluator = PrometheusEvaluator(config["datasources"])

    sched_cfg = config["scheduler"]
    scheduler = RuleScheduler(
        db, evaluator, lifecycle,
        engine=EvaluationEngine(),
        max_workers=sched_cfg["max_workers"],
        evaluation_timeout=sched_cfg["evaluation_timeout"],
        interval_seconds=sched_cfg["tick_interval"],
    )

    return {
        "config": config, "db": db, "rules": rules, "index": index,
        "lifecycle": lifecycle, "evaluator": evaluator, "scheduler": scheduler,
    }


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="pulse")
@click.pass_context
def cli(ctx, config_path, verbose):
    """Pulse Alert Monitor - rule evaluation and alert lifecycle tracking."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx):
    if "_components" not in ctx.obj:
        ctx.obj["_components"] = _init_components(ctx.obj.get("config_path"), ctx.obj.get("verbose"))
    return ctx.obj["_components"]


def _styled(value, styles):
    value = getattr(value, "value", value)
    style = styles.get(value)
    return f"[{style}]{value}[/{style}]" if style else str(value)


def _fmt_time(dt):
    return dt.strftime("%Y-%m-%d %H:%M:%S") if dt else "-"


def _fmt_value(value):
    return f"{value:g}" if value is not None else "N/A"


# ──────────────────────────────────────────────────────
# RUN
# ──────────────────────────────────────────────────────
@cli.command()
@click.option("--no-sync", is_flag=True, help="Do not sync the rules file before starting")
@click.pass_context
def run(ctx, no_sync):
    """Evaluate rules continuously until interrupted."""
    c = _get_components(ctx)
    if not no_sync:
        c["rules"].sync(c["db"])

    scheduler = c["scheduler"]
    console.print(f"[bold]Pulse[/bold] evaluating rules every {scheduler.interval}s (Ctrl+C to stop)")
    scheduler.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("\nStopping...")
    finally:
        scheduler.stop()
        c["evaluator"].close()
        c["db"].close()


@cli.command()
@click.pass_context
def tick(ctx):
    """Run a single scheduler tick and wait for its evaluations."""
    c = _get_components(ctx)
    try:
        dispatched = c["scheduler"].run_once()
    finally:
        c["scheduler"].stop()
        c["evaluator"].close()

    if not dispatched:
        console.print("[dim]No rules due[/dim]")
        return
    console.print(f"[green]✓[/green] Evaluated {len(dispatched)} rule(s)")
    for rule_id in dispatched:
        rule = c["db"].get_rule(rule_id)
        console.print(f"  {rule_id}: {rule.last_eval_result if rule else '?'}")


# ──────────────────────────────────────────────────────
# RULES
# ──────────────────────────────────────────────────────
@cli.group()
def rules():
    """Alert rule management."""
    pass


@rules.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include deleted rules")
@click.pass_context
def rules_list(ctx, show_all):
    """List rules in the rule store."""
    c = _get_components(ctx)
    stored = c["db"].list_rules(include_deleted=show_all)
    if not stored:
        console.print("[dim]No rules stored. Run 'rules sync' first.[/dim]")
        return

    table = Table(title="Alert Rules", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Condition")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Every")
    table.add_column("Last Eval")
    table.add_column("Result")
    table.add_column("Enabled")
    for r in stored:
        status = getattr(r.status, "value", r.status)
        if r.config_error:
            status = "[red]invalid[/red]"
        elif r.deleted_at:
            status = "[dim]deleted[/dim]"
        table.add_row(
            r.id, r.name, r.condition(), _styled(r.severity, SEVERITY_STYLE), status,
            f"{r.interval_seconds:g}s", _fmt_time(r.last_eval_at), r.config_error or r.last_eval_result or "-",
            "[green]✓[/green]" if r.enabled else "[red]✗[/red]",
        )
    console.print(table)


@rules.command("sync")
@click.pass_context
def rules_sync(ctx):
    """Load the rules file into the rule store."""
    c = _get_components(ctx)
    count = c["rules"].sync(c["db"])
    console.print(f"[green]✓[/green] Synced {count} rule(s) from {c['rules'].rules_path}")


@rules.command("test")
@click.option("--rule", "rule_id", default=None, help="Only test this rule id")
@click.pass_context
def rules_test(ctx, rule_id):
    """Dry-run rules from the rules file against live data. Nothing is written."""
    c = _get_components(ctx)
    to_test = c["rules"].get_all_rules()
    if rule_id:
        to_test = [r for r in to_test if r.id == rule_id]
        if not to_test:
            console.print(f"[red]Error: unknown rule '{rule_id}'[/red]")
            sys.exit(1)

    try:
        results = c["scheduler"].test_rules(to_test)
    finally:
        c["scheduler"].stop()
        c["evaluator"].close()

    table = Table(title="Alert Rules Test", show_header=True)
    table.add_column("Rule")
    table.add_column("Condition")
    table.add_column("Current")
    table.add_column("Verdict")
    table.add_column("Would Breach")
    table.add_column("Alert")
    for r in results:
        verdict = r["verdict"]
        if verdict is None:
            table.add_row(r["rule"].id, r["rule"].condition(), "N/A", f"[red]invalid: {r['error']}[/red]", "-", "-")
            continue
        breach = "[red]YES[/red]" if verdict.breaching else "[dim]no[/dim]"
        table.add_row(
            r["rule"].id, r["rule"].condition(), _fmt_value(verdict.value),
            verdict.kind.value + (f" ({r['error']})" if r["error"] else ""), breach,
            _styled(r["status"], STATUS_STYLE) if r["status"] else "-",
        )
    console.print(table)


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.group()
def alerts():
    """Alert inspection."""
    pass


@alerts.command("list")
@click.option("--status", default=None,
              type=click.Choice(["pending", "firing", "acknowledged", "silenced", "resolved"]))
@click.option("--rule", "rule_id", default=None, help="Only alerts of this rule")
@click.option("--open", "open_only", is_flag=True, help="Only open alerts")
@click.option("--limit", default=50, help="Maximum rows")
@click.pass_context
def alerts_list(ctx, status, rule_id, open_only, limit):
    """List alerts, newest first."""
    c = _get_components(ctx)
    if open_only:
        found = [a for a in c["db"].get_open_alerts() if not rule_id or a.rule_id == rule_id][:limit]
    else:
        found = c["db"].list_alerts(status=status, rule_id=rule_id, limit=limit)
    if not found:
        console.print("[dim]No alerts[/dim]")
        return

    now = datetime.now(timezone.utc)
    table = Table(title="Alerts", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Value")
    table.add_column("Started")
    table.add_column("Duration")
    table.add_column("Labels", style="dim")
    for a in found:
        duration = a.duration(now)
        table.add_row(
            a.id[:12], a.name, _styled(a.severity, SEVERITY_STYLE), _styled(a.status, STATUS_STYLE),
            _fmt_value(a.value), _fmt_time(a.starts_at), str(duration).split(".")[0],
            ", ".join(f"{k}={v}" for k, v in sorted(a.labels.items())),
        )
    console.print(table)


def _find_alert(db, alert_id):
    alert = db.get_alert(alert_id)
    if alert:
        return alert
    # Allow the shortened ids printed by 'alerts list'
    matches = [a for a in db.list_alerts(limit=1000) if a.id.startswith(alert_id)]
    return matches[0] if len(matches) == 1 else None


@alerts.command("history")
@click.argument("alert_id")
@click.pass_context
def alerts_history(ctx, alert_id):
    """Show the audit trail of one alert."""
    c = _get_components(ctx)
    alert = _find_alert(c["db"], alert_id)
    if alert is None:
        console.print(f"[red]Error: alert '{alert_id}' not found[/red]")
        sys.exit(1)

    console.print(f"[bold]{alert.name}[/bold] ({alert.id}) {_styled(alert.status, STATUS_STYLE)}")
    table = Table(show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Action")
    table.add_column("Actor")
    table.add_column("Transition")
    table.add_column("Comment")
    for h in c["db"].get_history(alert.id):
        old = getattr(h.old_status, "value", h.old_status) or "-"
        new = getattr(h.new_status, "value", h.new_status) or "-"
        table.add_row(_fmt_time(h.created_at), h.action.value, h.actor,
                      f"{old} → {new}" if old != new else new, h.comment or "")
    console.print(table)


@alerts.command("stats")
@click.option("--days", default=7, help="Days to look back")
@click.pass_context
def alerts_stats(ctx, days):
    """Summarize alerts and transitions over a period."""
    c = _get_components(ctx)
    since = datetime.now(timezone.utc) - timedelta(days=days)
    stats = c["db"].get_alert_stats(since)
    transitions = c["db"].get_history_counts(since)

    table = Table(title=f"Alert Stats (last {days}d)", show_header=True)
    table.add_column("Metric", style="dim")
    table.add_column("Value")
    table.add_row("Alerts started", str(stats["total"]))
    for status, count in sorted(stats["by_status"].items()):
        table.add_row(f"  {status}", str(count))
    for severity, count in sorted(stats["by_severity"].items()):
        table.add_row(f"  severity {severity}", str(count))
    for action, count in sorted(transitions.items()):
        table.add_row(f"Transitions: {action}", str(count))
    console.print(table)


@alerts.command("prune")
@click.option("--days", default=None, type=int, help="Keep resolved alerts newer than this (default from config)")
@click.pass_context
def alerts_prune(ctx, days):
    """Delete resolved alerts past the retention window."""
    c = _get_components(ctx)
    days = days or c["config"]["retention"]["resolved_days"]
    before = datetime.now(timezone.utc) - timedelta(days=days)
    removed = c["db"].cleanup_resolved(before)
    console.print(f"[green]✓[/green] Removed {removed} resolved alert(s) older than {days}d")


if __name__ == "__main__":
    cli()
