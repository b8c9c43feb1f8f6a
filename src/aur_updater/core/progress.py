"""
Aggregated download progress.

Every worker reports into one FetchProgress. Per-task byte counts and the
completed/total counter are mutated under a lock, and the whole display is
re-rendered on every update instead of on a refresh timer.
"""

import threading
from dataclasses import dataclass

from rich.console import Console
from rich.filesize import decimal
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TaskProgressColumn, TextColumn


@dataclass
class TaskState:
    """Bytes received for one in-flight task. ``total`` is 0 when unknown."""

    received: int = 0
    total: int = 0


@dataclass(frozen=True)
class AggregateProgress:
    completed: int
    failed: int
    total_tasks: int
    received: int
    expected: int
    in_flight: int

    def describe(self) -> str:
        size = decimal(self.received)
        if self.expected:
            size = f"{size}/{decimal(self.expected)}"
        failed = f", {self.failed} failed" if self.failed else ""
        return f"{self.completed}/{self.total_tasks} assets{failed} · {size}"


def _detail(state: TaskState) -> str:
    if state.total:
        return f"{decimal(state.received)}/{decimal(state.total)}"
    return decimal(state.received)


class FetchProgress:
    """Combined view over all in-flight downloads."""

    def __init__(self, total_tasks: int = 0, console: Console | None = None, enabled: bool = True):
        self.total_tasks = total_tasks
        self.completed = 0
        self.failed = 0
        self.states: dict[str, TaskState] = {}
        self._lock = threading.Lock()
        self._task_ids: dict[str, TaskID] = {}
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("{task.fields[detail]}"),
            console=console,
            auto_refresh=False,
            disable=not enabled,
        )
        self._overall = self.progress.add_task("[green]Fetching[/green]", total=total_tasks or None, detail="")

    def __enter__(self) -> "FetchProgress":
        self.progress.start()
        return self

    def __exit__(self, *exc_info) -> None:
        with self._lock:
            self._render()
        self.progress.stop()

    def start(self, key: str, description: str, total: int = 0) -> None:
        with self._lock:
            state = TaskState(0, total)
            self.states[key] = state
            self._task_ids[key] = self.progress.add_task(description, total=total or None, detail=_detail(state))
            self._render()

    def update(self, key: str, received: int, total: int = 0) -> None:
        """Progress callback: ``(bytes received, total bytes or 0)``."""
        with self._lock:
            state = self.states.setdefault(key, TaskState())
            state.received = received
            state.total = total
            task_id = self._task_ids.get(key)
            if task_id is not None:
                self.progress.update(task_id, completed=received, total=total or None, detail=_detail(state))
            self._render()

    def finish(self, key: str, ok: bool = True) -> None:
        with self._lock:
            self.completed += 1
            if not ok:
                self.failed += 1
            self.states.pop(key, None)
            task_id = self._task_ids.pop(key, None)
            if task_id is not None:
                self.progress.remove_task(task_id)
            self._render()

    def snapshot(self) -> AggregateProgress:
        with self._lock:
            return self._aggregate()

    def _aggregate(self) -> AggregateProgress:
        return AggregateProgress(
            completed=self.completed,
            failed=self.failed,
            total_tasks=self.total_tasks,
            received=sum(s.received for s in self.states.values()),
            expected=sum(s.total for s in self.states.values()),
            in_flight=len(self.states),
        )

    def _render(self) -> None:
        # caller holds the lock
        aggregate = self._aggregate()
        self.progress.update(
            self._overall,
            completed=self.completed,
            total=self.total_tasks or None,
            detail=aggregate.describe(),
        )
        self.progress.refresh()
