from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from time import monotonic
from typing import Callable, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from .transfer import (
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    OUTCOME_SUCCESS,
    TransferResult,
)

logger = logging.getLogger(__name__)

ResultCallback = Callable[[TransferResult, "RunSummary"], None]


@dataclass
class RunSummary:
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    bytes_transferred: int = 0
    elapsed: float = 0.0
    failures: list[TransferResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def record(self, result: TransferResult) -> None:
        self.total += 1
        self.bytes_transferred += result.bytes_transferred
        if result.outcome == OUTCOME_SUCCESS:
            self.succeeded += 1
        elif result.outcome == OUTCOME_SKIPPED:
            self.skipped += 1
        elif result.outcome == OUTCOME_FAILED:
            self.failed += 1
            self.failures.append(result)
        else:
            raise ValueError(f"unknown outcome {result.outcome!r} for {result.key}")


class OutcomeAggregator:
    """Single owner of the :class:`RunSummary`.

    Workers put results on :attr:`queue`; :meth:`consume` applies them in
    arrival order until :meth:`close` is called.
    """

    _CLOSED = object()

    def __init__(self, on_result: Optional[ResultCallback] = None) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.summary = RunSummary()
        self._on_result = on_result
        self._started_at = monotonic()

    def submit(self, result: TransferResult) -> None:
        self.queue.put_nowait(result)

    def close(self) -> None:
        self.queue.put_nowait(self._CLOSED)

    async def consume(self) -> RunSummary:
        while True:
            item = await self.queue.get()
            if item is self._CLOSED:
                break
            self._apply(item)
        self.summary.elapsed = monotonic() - self._started_at
        return self.summary

    def _apply(self, result: TransferResult) -> None:
        self.summary.record(result)
        if result.failed:
            logger.warning(
                "Failed %s during %s after %d attempt(s): %s",
                result.key,
                result.stage,
                result.attempts,
                result.reason,
            )
        else:
            logger.debug(
                "%s %s (%d bytes)", result.outcome, result.key, result.bytes_transferred
            )
        if self._on_result is not None:
            self._on_result(result, self.summary)


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def render_summary(summary: RunSummary, console: Optional[Console] = None) -> None:
    console = console or Console(stderr=True)
    table = Table(title="Transfer summary", show_header=False)
    table.add_column("field", style="bold")
    table.add_column("value", justify="right")
    table.add_row("Objects", str(summary.total))
    table.add_row("Succeeded", f"[green]{summary.succeeded}[/green]")
    table.add_row("Skipped", f"[yellow]{summary.skipped}[/yellow]")
    failed_style = "red" if summary.failed else "green"
    table.add_row("Failed", f"[{failed_style}]{summary.failed}[/{failed_style}]")
    table.add_row("Transferred", format_size(summary.bytes_transferred))
    table.add_row("Elapsed", f"{summary.elapsed:.1f}s")
    console.print(table)
    if not summary.failures:
        return
    failures = Table(title="Failed objects")
    failures.add_column("Key", overflow="fold")
    failures.add_column("Stage")
    failures.add_column("Attempts", justify="right")
    failures.add_column("Reason", overflow="fold")
    for result in sorted(summary.failures, key=lambda item: item.key):
        failures.add_row(
            Text(result.key),
            result.stage,
            str(result.attempts),
            Text(result.reason or ""),
        )
    console.print(failures)


def write_failures_file(summary: RunSummary, path: Path) -> bool:
    rows = [
        {
            "key": result.key,
            "stage": result.stage,
            "attempts": result.attempts,
            "reason": result.reason,
        }
        for result in sorted(summary.failures, key=lambda item: item.key)
    ]
    payload = {"failed": len(rows), "objects": rows}
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(payload, indent=2))
        temp_path.replace(path)
    except OSError as exc:
        logger.error("Could not write failures file %s: %s", path, exc)
        return False
    return True
