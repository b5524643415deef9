"""Progress reporting for reconciliation passes.

The reconcilers emit one event per unit of work (upload, deletion,
verified file, batch). A reporter is passed into each reconcile call, so
there is no process-wide progress state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional

from ..models import ScopeKind

if TYPE_CHECKING:
    from .protocols import ProgressReporter


class ProgressStep(str, Enum):
    """Step labels reported during a sync."""

    GETTING_MANIFEST = "Getting manifest"
    UPLOADING_LOCAL_FILE = "Uploading {0}"
    DELETING_FILE_ON_SERVER = "Deleting {0} on server"
    VERIFYING_LOCAL_FILE = "Verifying {0}"
    DELETING_LOCAL_FILE = "Deleting local {0}"
    UPLOADING_ATTACHMENTS = "Uploading {0} attachment(s) of row {1}"
    DOWNLOADING_ATTACHMENTS = "Downloading {0} attachment(s) of row {1}"

    def describe(self, context: tuple = ()) -> str:
        """Format the label with its context arguments."""
        return self.value.format(*context)


@dataclass
class SyncProgressInfo:
    """Progress event delivered to callbacks."""

    kind: ScopeKind
    step: ProgressStep
    context: tuple
    percent: float

    @property
    def description(self) -> str:
        return self.step.describe(self.context)


class NullProgressReporter:
    """Reporter that discards all events."""

    def report(
        self,
        kind: ScopeKind,
        step: ProgressStep,
        context: tuple,
        percent: float,
    ) -> None:
        pass


class CallbackProgressReporter:
    """Reporter that forwards each event to a callback."""

    def __init__(self, callback: Callable[[SyncProgressInfo], None]):
        self.callback = callback

    def report(
        self,
        kind: ScopeKind,
        step: ProgressStep,
        context: tuple,
        percent: float,
    ) -> None:
        self.callback(SyncProgressInfo(kind, step, context, percent))


class StepProgress:
    """Tracks the percentage of a scope pass.

    The step size is ``100 / (1 + outstanding items)`` and is recomputed
    whenever the number of outstanding items changes. The reported
    percentage never decreases and never exceeds 100.
    """

    def __init__(self, total_items: int):
        self.step_count = 1
        self.step_size = 100.0 / (1 + total_items)
        self._reported = 0.0

    def resize(self, total_items: int) -> None:
        """Recompute the step size for a new outstanding-item count."""
        self.step_size = 100.0 / (1 + total_items)

    def current(self) -> float:
        """Percentage for the step about to be reported."""
        percent = min(100.0, self.step_count * self.step_size)
        self._reported = max(self._reported, percent)
        return self._reported

    def advance(self) -> None:
        self.step_count += 1


def resolve_reporter(reporter: Optional["ProgressReporter"]) -> "ProgressReporter":
    """Return the given reporter or a NullProgressReporter."""
    return reporter if reporter is not None else NullProgressReporter()
