"""CLI progress display for sync operations.

This module provides a Rich-based progress display that receives the
events reported by the reconcilers.
"""

from typing import Optional

from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from .models import ScopeKind
from .sync.progress import ProgressStep


class SyncProgressDisplay:
    """Rich-based progress display for sync operations.

    Implements the ``ProgressReporter`` protocol. One task is shown per
    scope kind; its description is the label of the latest step and its
    completion the percentage reported by the reconciler.
    """

    def __init__(self, transient: bool = False) -> None:
        """Initialize the progress display.

        Args:
            transient: Remove the progress bars when the display stops
        """
        self.transient = transient
        self._progress: Optional[Progress] = None
        self._tasks: dict[ScopeKind, TaskID] = {}

    def report(
        self,
        kind: ScopeKind,
        step: ProgressStep,
        context: tuple,
        percent: float,
    ) -> None:
        """Update the task of a scope kind."""
        if self._progress is None:
            return

        description = step.describe(context)
        task = self._tasks.get(kind)
        if task is None:
            self._tasks[kind] = self._progress.add_task(
                description, total=100.0, completed=percent, scope=kind.value
            )
        else:
            self._progress.update(task, description=description, completed=percent)

    def __enter__(self) -> "SyncProgressDisplay":
        """Enter context manager - start progress display."""
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[cyan]{task.fields[scope]}"),
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            refresh_per_second=4,
            transient=self.transient,
        )
        self._progress.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager - stop progress display."""
        if self._progress is not None:
            if exc_type is None:
                for task in self._tasks.values():
                    self._progress.update(task, completed=100.0)
            self._progress.__exit__(exc_type, exc_val, exc_tb)
            self._progress = None
            self._tasks = {}
