"""Rich console output for batch progress."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from rich.console import Console
from rich.table import Table
from rich.text import Text

from roboharness.orchestrate.state import EnvironmentRecord


STATE_STYLES: dict[str, str] = {
    "pending": "dim",
    "running": "yellow",
    "success": "green",
    "retry": "magenta",
    "fatal": "bold red",
}

LOG_PREFIX_STYLES: dict[str, str] = {
    "BATCH": "bold cyan",
    "ENV": "bold",
    "SUBMIT": "bold blue",
    "SHUTDOWN": "bold red",
}

LOG_EVENT_STYLES: dict[str, str] = {
    "start": "cyan",
    "started": "cyan",
    "ok": "bold green",
    "collision": "bold magenta",
    "crash": "bold red",
    "failed": "bold red",
    "complete": "bold green",
    "aborted": "bold red",
    "requested": "bold red",
}


def build_table(records: Iterable[EnvironmentRecord], *, caption: str | None = None) -> Table:
    table = Table(title=Text("Batch", style="bold cyan"), caption=caption, expand=True)
    table.add_column("#", no_wrap=True, style="dim")
    table.add_column("Environment", no_wrap=True, style="bold")
    table.add_column("State", no_wrap=True)
    table.add_column("Attempts", no_wrap=True, style="cyan")
    table.add_column("Collisions", no_wrap=True, style="magenta")
    table.add_column("Result")
    for index, record in enumerate(records):
        note = str(record.result_path) if record.result_path else (record.note or "")
        table.add_row(
            str(index),
            Text(record.environment),
            Text(record.state, style=STATE_STYLES.get(record.state, "")),
            str(record.attempts),
            str(record.collisions),
            Text(note, style="red" if record.note and not record.result_path else "dim"),
        )
    return table


def format_log_message(message: str) -> Text:
    text = Text(message)
    parts = message.split(" ", maxsplit=2)
    if not parts:
        return text
    prefix = parts[0]
    prefix_style = LOG_PREFIX_STYLES.get(prefix)
    if prefix_style:
        text.stylize(prefix_style, 0, len(prefix))
    if len(parts) >= 2:
        event = parts[1]
        event_style = LOG_EVENT_STYLES.get(event)
        if event_style:
            start = len(prefix) + 1
            text.stylize(event_style, start, start + len(event))
    return text


@dataclass
class BatchConsole:
    enabled: bool = True

    def __post_init__(self) -> None:
        self._console = Console(log_path=False, highlight=False, stderr=True, quiet=not self.enabled)

    def log(self, message: str) -> None:
        self._console.log(format_log_message(message))

    def dump(self, title: str, body: str) -> None:
        """Print a block of captured process output verbatim."""
        self._console.rule(Text(title, style="bold red"))
        self._console.print(body, markup=False, highlight=False)
        self._console.rule()

    def summary(self, records: Iterable[EnvironmentRecord], *, caption: str | None = None) -> None:
        self._console.print(build_table(records, caption=caption))


__all__ = ["BatchConsole", "build_table", "format_log_message"]
