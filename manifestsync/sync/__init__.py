"""Reconciliation engine for app-level, table-level and row attachment files."""

from .attachments import AttachmentPlan, AttachmentReconciler
from .batching import plan_batches
from .engine import SyncEngine
from .layout import AppLayout, filter_table_id_files
from .progress import (
    CallbackProgressReporter,
    NullProgressReporter,
    ProgressStep,
    StepProgress,
    SyncProgressInfo,
)
from .protocols import (
    Hasher,
    ManifestSource,
    ProgressReporter,
    SyncStateStore,
    TablePropertiesCallback,
    TransferExecutor,
)
from .reconciler import ScopeReconciler
from .scanner import DirectoryScanner
from .state import JsonSyncStateStore

__all__ = [
    "SyncEngine",
    "ScopeReconciler",
    "AttachmentReconciler",
    "AttachmentPlan",
    "plan_batches",
    "AppLayout",
    "DirectoryScanner",
    "filter_table_id_files",
    "JsonSyncStateStore",
    "ProgressStep",
    "StepProgress",
    "SyncProgressInfo",
    "NullProgressReporter",
    "CallbackProgressReporter",
    "Hasher",
    "ManifestSource",
    "ProgressReporter",
    "SyncStateStore",
    "TablePropertiesCallback",
    "TransferExecutor",
]
