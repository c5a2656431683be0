"""Terminal outcome of a launch."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


class OutcomeKind(Enum):
    EXITED = auto()
    SIGNALED = auto()
    ORCHESTRATOR_FAILURE = auto()


class FailureReason(Enum):
    """Why a launch never produced a process exit status."""

    CONNECTION_LOST = "connection_lost"
    START_FAILED = "start_failed"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class ExitOutcome:
    """Immutable terminal result, consumed once by the caller.

    Attributes:
        kind: which variant this is
        unit_name: the transient unit the result belongs to
        exit_code: 0-255 for ``EXITED``
        signal: signal number for ``SIGNALED``
        core_dumped: the signal produced a core dump
        reason: set for ``ORCHESTRATOR_FAILURE``
        detail: host- or orchestrator-supplied detail
        host_result: systemd's ``Result`` string (``success``, ``oom-kill``...)
        wall_time_us: wall clock time between activation and deactivation
    """

    kind: OutcomeKind
    unit_name: str
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    core_dumped: bool = False
    reason: Optional[FailureReason] = None
    detail: str = ""
    host_result: Optional[str] = None
    wall_time_us: Optional[int] = None

    @classmethod
    def exited(cls, unit_name: str, code: int, **kwargs) -> "ExitOutcome":
        return cls(OutcomeKind.EXITED, unit_name, exit_code=code, **kwargs)

    @classmethod
    def signaled(cls, unit_name: str, signal: int, **kwargs) -> "ExitOutcome":
        return cls(OutcomeKind.SIGNALED, unit_name, signal=signal, **kwargs)

    @classmethod
    def orchestrator_failure(
        cls,
        unit_name: str,
        reason: FailureReason,
        detail: str = "",
        **kwargs,
    ) -> "ExitOutcome":
        return cls(
            OutcomeKind.ORCHESTRATOR_FAILURE,
            unit_name,
            reason=reason,
            detail=detail,
            **kwargs,
        )

    @property
    def success(self) -> bool:
        """The process ran and exited with status 0."""
        return self.kind == OutcomeKind.EXITED and self.exit_code == 0

    @property
    def failed(self) -> bool:
        return not self.success

    @property
    def process_ran(self) -> bool:
        """False when the host never got the process running."""
        return self.kind != OutcomeKind.ORCHESTRATOR_FAILURE
