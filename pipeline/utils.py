"""Utility functions for the event pipeline."""
import io
import logging
import typing as t
from datetime import datetime, timezone

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

console = Console()


def configure_logging(level: t.Union[int, str] = logging.INFO) -> None:
    """Route pipeline logging through a rich handler.

    Safe to call more than once; an existing rich handler on the root logger
    is reused instead of stacking a second one.
    """
    root = logging.getLogger()
    root.setLevel(level)
    if any(isinstance(h, RichHandler) for h in root.handlers):
        return
    handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(handler)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: t.Any) -> t.Optional[datetime]:
    """Parse an ISO 8601 date or datetime into an aware datetime.

    Date-only values ("2026-10-20", as used by all-day calendar events) map to
    midnight UTC. Naive datetimes are assumed to be UTC.

    Args:
        value: A datetime, or an ISO formatted string

    Returns:
        The parsed datetime, or None if the value cannot be parsed
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: t.Optional[datetime]) -> str:
    """Format a datetime into a concise readable form, e.g. 'Mon 1/15 2:30 PM'."""
    if dt is None:
        return "-"
    return dt.strftime("%a %-m/%-d %-I:%M %p")


def truncate_title(title: str, max_length: int = 45) -> str:
    """Truncate title to max_length characters, adding ellipsis if needed."""
    if len(title) <= max_length:
        return title
    return title[:max_length - 3] + "..."


STATUS_STYLES = {
    "suggested": "cyan",
    "approved": "blue",
    "executing": "yellow",
    "completed": "green",
    "issue": "red",
    "error": "red",
    "planning": "yellow",
    "skipped": "dim",
}


def _styled(value: t.Optional[str]) -> str:
    if not value:
        return "[dim]-[/dim]"
    style = STATUS_STYLES.get(value)
    return f"[{style}]{value}[/{style}]" if style else value


def create_events_table(events: t.Sequence[t.Any], title: str = "📅 Events") -> Table:
    """Create a table of events with their planning status and tasks."""
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Title", style="white")
    table.add_column("Date/Time", style="yellow")
    table.add_column("Planning")
    table.add_column("Tasks")

    for event in events:
        status = event.planning_status.value if event.planning_status else None
        tasks = "\n".join(
            f"{task.title} ({_styled(task.status.value)})" for task in event.tasks
        )
        table.add_row(
            truncate_title(event.title),
            format_datetime(event.scheduled_at),
            _styled(status),
            tasks or "[dim]none[/dim]",
        )
    return table


def create_records_table(records: t.Mapping[str, t.Any], processed: t.Collection[str] = ()) -> Table:
    """Create a table summarizing stored processing records."""
    table = Table(title="📊 Processing Status", show_header=True, header_style="bold magenta")
    table.add_column("", width=3)
    table.add_column("Event", style="white")
    table.add_column("Type", style="cyan")
    table.add_column("Planning")
    table.add_column("Tasks", justify="right")
    table.add_column("Birthday task")
    table.add_column("Updated", style="dim")

    for event_id, record in records.items():
        specialized = record.specialized_task
        if specialized:
            birthday = specialized.status.value
        else:
            birthday = record.specialized_status.value if record.specialized_status else None
        table.add_row(
            "✓" if event_id in processed else "",
            truncate_title(record.event_title or event_id),
            record.event_type or "-",
            _styled(record.planning_status.value),
            str(len(record.planning_tasks)),
            _styled(birthday),
            record.last_updated[:19].replace("T", " ") if record.last_updated else "-",
        )
    return table


def render_text(renderable: t.Any, width: int = 120) -> str:
    """Render a rich renderable to plain text."""
    buffer = Console(width=width, record=True, file=io.StringIO())
    buffer.print(renderable)
    return buffer.export_text()
