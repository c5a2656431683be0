"""Domain models for sdrun."""

from .capability import FEATURE_SUPPORT, CapabilityLevel, Feature, FeatureSupport
from .errors import (
    ConnectionLostError,
    ControlBusError,
    InvalidSpecError,
    NameCollisionError,
    PermissionDeniedError,
    RemoteRejectedError,
    SdRunError,
    UnitNotFoundError,
    UnsupportedLimitError,
)
from .outcome import ExitOutcome, FailureReason, OutcomeKind
from .units import (
    BusTarget,
    GiB,
    KiB,
    MiB,
    CpuScheduling,
    CpuSchedulingPolicy,
    Identity,
    IdentityKind,
    InputSpec,
    Isolation,
    Mount,
    MountKind,
    OutputSpec,
    ProtectProc,
    ResourceLimits,
    RLimit,
    StdioKind,
    UnitSpec,
)

__all__ = [
    "CapabilityLevel",
    "Feature",
    "FeatureSupport",
    "FEATURE_SUPPORT",
    # Errors
    "SdRunError",
    "InvalidSpecError",
    "UnsupportedLimitError",
    "ControlBusError",
    "NameCollisionError",
    "PermissionDeniedError",
    "ConnectionLostError",
    "RemoteRejectedError",
    "UnitNotFoundError",
    # Outcome
    "ExitOutcome",
    "FailureReason",
    "OutcomeKind",
    # Launch request
    "UnitSpec",
    "BusTarget",
    "ResourceLimits",
    "RLimit",
    "Isolation",
    "Identity",
    "IdentityKind",
    "InputSpec",
    "OutputSpec",
    "StdioKind",
    "Mount",
    "MountKind",
    "ProtectProc",
    "CpuScheduling",
    "CpuSchedulingPolicy",
    "KiB",
    "MiB",
    "GiB",
]
