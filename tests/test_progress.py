"""Tests for progress tracking and the CLI progress display."""

from unittest.mock import Mock

from manifestsync.cli_progress import SyncProgressDisplay
from manifestsync.models import ScopeKind
from manifestsync.sync.progress import (
    CallbackProgressReporter,
    NullProgressReporter,
    ProgressStep,
    StepProgress,
    resolve_reporter,
)


class TestStepProgress:
    """Tests for StepProgress."""

    def test_step_size_from_item_count(self):
        """Test that the first step is 100 / (1 + items)."""
        progress = StepProgress(3)

        assert progress.current() == 25.0
        progress.advance()
        assert progress.current() == 50.0

    def test_resize_never_goes_backwards(self):
        """Test that growing the item count does not lower the percentage."""
        progress = StepProgress(1)
        progress.advance()
        before = progress.current()

        progress.resize(10)

        assert progress.current() >= before

    def test_capped_at_100(self):
        """Test that the percentage never exceeds 100."""
        progress = StepProgress(0)
        for _ in range(5):
            progress.advance()

        assert progress.current() == 100.0


class TestReporters:
    """Tests for the bundled reporters."""

    def test_callback_reporter(self):
        """Test that events are forwarded with a formatted description."""
        callback = Mock()
        reporter = CallbackProgressReporter(callback)

        reporter.report(ScopeKind.APP, ProgressStep.UPLOADING_LOCAL_FILE, ("a.txt",), 50.0)

        info = callback.call_args[0][0]
        assert info.kind == ScopeKind.APP
        assert info.percent == 50.0
        assert info.description == "Uploading a.txt"

    def test_resolve_reporter(self):
        """Test that a missing reporter becomes a null reporter."""
        reporter = Mock()

        assert resolve_reporter(reporter) is reporter
        assert isinstance(resolve_reporter(None), NullProgressReporter)


class TestSyncProgressDisplay:
    """Tests for SyncProgressDisplay."""

    def test_report_outside_context_is_ignored(self):
        """Test that events before the display starts are dropped."""
        display = SyncProgressDisplay()

        display.report(ScopeKind.APP, ProgressStep.GETTING_MANIFEST, (), 1.0)

        assert display._tasks == {}

    def test_one_task_per_scope_kind(self):
        """Test that events of the same kind update a single task."""
        with SyncProgressDisplay(transient=True) as display:
            display.report(ScopeKind.TABLE, ProgressStep.GETTING_MANIFEST, (), 1.0)
            display.report(
                ScopeKind.TABLE, ProgressStep.VERIFYING_LOCAL_FILE, ("a.csv",), 50.0
            )
            display.report(ScopeKind.ROW, ProgressStep.UPLOADING_ATTACHMENTS, (2, "r1"), 30.0)

            assert set(display._tasks) == {ScopeKind.TABLE, ScopeKind.ROW}
            task = display._progress.tasks[0]
            assert task.description == "Verifying a.csv"
            assert task.completed == 50.0

        assert display._progress is None
