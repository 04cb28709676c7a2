"""
Rich display helpers for the CLI
"""

from typing import Any, Dict, Iterable, Optional

from rich.panel import Panel
from rich.table import Table

SENSITIVE_KEYS = ("password", "secret", "token", "api_key")

STATUS_STYLES = {
    "queued": "dim",
    "processing": "cyan",
    "complete": "green",
    "error": "red",
}


def create_config_table(config_data: Dict[str, Any], title: str = "Configuration") -> Table:
    """
    Create a Rich table for configuration display
    """
    table = Table(title=title, show_header=True, header_style="bold blue")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    table.add_column("Source", style="yellow")

    for key, value_info in config_data.items():
        value = value_info.get("value")
        source = value_info.get("source", "unknown")

        if value is None or value == "":
            display_value = "not set"
        elif any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
            display_value = "***masked***"
        else:
            display_value = str(value)

        table.add_row(key, display_value, source)

    return table


def format_event(event: Dict[str, Any]) -> str:
    """One-line rendering of a published pipeline event."""
    status = event.get("status", "?")
    style = STATUS_STYLES.get(status, "white")
    line = f"[{style}]{status:<10}[/{style}] {event.get('item_id')} [dim]{event.get('stage')}[/dim]"
    if event.get("error"):
        line += f" [red]{event['error']}[/red]"
    return line


def create_summary_table(records: Iterable[Dict[str, Any]], title: str = "Processing Summary") -> Table:
    table = Table(title=title, show_header=True, header_style="bold blue")
    table.add_column("Document", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Category", style="magenta")
    table.add_column("Title")
    table.add_column("Alerts", justify="right")

    for record in records:
        status = record.get("status", "?")
        style = STATUS_STYLES.get(status, "white")
        alerts = record.get("alerts") or []
        table.add_row(
            str(record.get("original_name") or record.get("id")),
            f"[{style}]{status}[/{style}]",
            str(record.get("category") or ""),
            str(record.get("title") or ""),
            ", ".join(alert["type"] for alert in alerts) if alerts else "0",
        )

    return table


def create_budget_panel(budget: Dict[str, Any]) -> Panel:
    counters = budget.get("completed_requests", {})
    lines = [
        f"Used: {budget['tokens_used']:,} / {budget['token_limit']:,} ({budget['usage_percentage']:.1f}%)",
        f"Queued requests: {budget['queued_requests']}",
        f"Granted: {counters.get('success', 0)}  "
        f"Rate limited: {counters.get('rate_limited', 0)}  "
        f"Failed: {counters.get('failure', 0)}",
        f"Window resets in: {budget['time_to_reset']:.1f}s",
    ]
    return Panel("\n".join(lines), title="Capacity Budget", border_style="blue")


def create_error_display(error: Exception, context: Optional[str] = None) -> Panel:
    """
    Create formatted error display with suggestions
    """
    error_lines = []

    if context:
        error_lines.append(f"Context: {context}")
        error_lines.append("")

    error_lines.append(f"Error: {str(error)}")

    suggestions = []
    message = str(error).lower()
    if "configuration" in message or "config" in type(error).__name__.lower():
        suggestions.extend(
            [
                "Check the configuration file: docpipe config show",
                "Verify DOCPIPE_* environment variables",
            ]
        )
    elif "rate limit" in message or "capacity" in message:
        suggestions.extend(
            [
                "Lower the batch size: --batch-size 1",
                "Raise admission.token_limit if the upstream quota allows it",
            ]
        )

    if suggestions:
        error_lines.append("")
        error_lines.append("Suggestions:")
        error_lines.extend(f"  • {suggestion}" for suggestion in suggestions)

    return Panel("\n".join(error_lines), title="[red]Error[/red]", border_style="red")
