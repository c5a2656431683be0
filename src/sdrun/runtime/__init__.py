"""Launch runtime: completion monitor, lifecycle guard and orchestrator."""

from sdrun.runtime.completion_monitor import (
    CompletionMonitor,
    LaunchState,
    PendingWait,
    derive_outcome,
)
from sdrun.runtime.lifecycle_guard import LaunchGuard, cleanup_unit
from sdrun.runtime.orchestrator import TransientUnitOrchestrator

__all__ = [
    "CompletionMonitor",
    "LaunchState",
    "PendingWait",
    "derive_outcome",
    "LaunchGuard",
    "cleanup_unit",
    "TransientUnitOrchestrator",
]
