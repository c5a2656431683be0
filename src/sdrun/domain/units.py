"""Launch request models.

A ``UnitSpec`` is built once and never mutated after submission. Overrides
go through ``sdrun.kernel.units.spec_builder.build_spec`` which returns a
fresh, validated copy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Tuple

KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB


class BusTarget(Enum):
    """Which service manager instance receives the units."""

    SYSTEM = "system"
    SESSION = "session"


class Isolation(Enum):
    """Namespace and privilege isolation flags."""

    PRIVATE_NETWORK = "PrivateNetwork"
    PRIVATE_IPC = "PrivateIPC"
    PRIVATE_DEVICES = "PrivateDevices"
    PRIVATE_USERS = "PrivateUsers"
    NO_NEW_PRIVILEGES = "NoNewPrivileges"
    MOUNT_API_VFS = "MountAPIVFS"


class IdentityKind(Enum):
    USER_GROUP = "user_group"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class Identity:
    """Who the wrapped process runs as.

    Leave ``UnitSpec.identity`` unset to use the manager default (root on
    the system bus, the calling user on a session bus).
    """

    kind: IdentityKind
    user: Optional[str] = None
    group: Optional[str] = None

    @classmethod
    def user_group(cls, user: str, group: Optional[str] = None) -> "Identity":
        return cls(IdentityKind.USER_GROUP, user=user, group=group or user)

    @classmethod
    def root(cls) -> "Identity":
        return cls.user_group("root")

    @classmethod
    def dynamic(cls) -> "Identity":
        return cls(IdentityKind.DYNAMIC)


class StdioKind(Enum):
    NULL = "null"
    INHERIT = "inherit"
    JOURNAL = "journal"
    FILE = "file"
    TRUNCATE = "truncate"
    APPEND = "append"


@dataclass(frozen=True)
class InputSpec:
    """Where fd 0 of the wrapped process is connected."""

    kind: StdioKind
    path: Optional[str] = None

    @classmethod
    def null(cls) -> "InputSpec":
        return cls(StdioKind.NULL)

    @classmethod
    def file(cls, path: str) -> "InputSpec":
        return cls(StdioKind.FILE, path)


@dataclass(frozen=True)
class OutputSpec:
    """Where fd 1 or fd 2 of the wrapped process is connected."""

    kind: StdioKind
    path: Optional[str] = None

    @classmethod
    def null(cls) -> "OutputSpec":
        return cls(StdioKind.NULL)

    @classmethod
    def inherit(cls) -> "OutputSpec":
        return cls(StdioKind.INHERIT)

    @classmethod
    def journal(cls) -> "OutputSpec":
        return cls(StdioKind.JOURNAL)

    @classmethod
    def file(cls, path: str) -> "OutputSpec":
        return cls(StdioKind.FILE, path)

    @classmethod
    def truncate(cls, path: str) -> "OutputSpec":
        return cls(StdioKind.TRUNCATE, path)

    @classmethod
    def append(cls, path: str) -> "OutputSpec":
        return cls(StdioKind.APPEND, path)


class MountKind(Enum):
    BIND = "bind"
    TMPFS = "tmpfs"
    IMAGE = "image"


@dataclass(frozen=True)
class Mount:
    """A mount inside the unit's private mount namespace.

    Read-only unless ``writable`` is set. ``recursive`` only matters for
    bind mounts; ``options`` are rejected for bind mounts.
    """

    kind: MountKind
    destination: str
    source: Optional[str] = None
    writable: bool = False
    recursive: bool = False
    ignore_nonexistent: bool = False
    options: Tuple[str, ...] = ()

    @classmethod
    def bind(cls, source: str, destination: str, **kwargs) -> "Mount":
        return cls(MountKind.BIND, destination, source=source, **kwargs)

    @classmethod
    def tmpfs(cls, destination: str, **kwargs) -> "Mount":
        return cls(MountKind.TMPFS, destination, **kwargs)

    @classmethod
    def image(cls, source: str, destination: str, **kwargs) -> "Mount":
        return cls(MountKind.IMAGE, destination, source=source, **kwargs)


class ProtectProc(Enum):
    NO_ACCESS = "noaccess"
    INVISIBLE = "invisible"
    PTRACEABLE = "ptraceable"


class CpuSchedulingPolicy(Enum):
    OTHER = 0
    FIFO = 1
    ROUND_ROBIN = 2
    BATCH = 3
    IDLE = 5


@dataclass(frozen=True)
class CpuScheduling:
    policy: CpuSchedulingPolicy = CpuSchedulingPolicy.OTHER
    real_time_priority: Optional[int] = None
    reset_on_fork: bool = False


@dataclass(frozen=True)
class RLimit:
    soft: int
    hard: int

    @classmethod
    def both(cls, value: int) -> "RLimit":
        return cls(soft=value, hard=value)


@dataclass(frozen=True)
class ResourceLimits:
    """Resource ceilings for the unit's cgroup and process rlimits.

    Attributes:
        memory_max: memory ceiling in bytes
        memory_swap_max: swap ceiling in bytes
        cpu_quota: CPU time per wall second, as a fraction of one core
        tasks_max: maximum concurrent tasks (threads and processes)
        allowed_cpus: CPU indices the unit may run on (empty = all)
        runtime_max_seconds: host-enforced wall clock ceiling
    """

    memory_max: Optional[int] = None
    memory_swap_max: Optional[int] = None
    cpu_quota: Optional[float] = None
    tasks_max: Optional[int] = None
    allowed_cpus: Tuple[int, ...] = ()
    runtime_max_seconds: Optional[float] = None
    nofile: Optional[RLimit] = None
    nproc: Optional[RLimit] = None
    fsize: Optional[RLimit] = None
    stack: Optional[RLimit] = None
    core: Optional[RLimit] = None


@dataclass(frozen=True)
class UnitSpec:
    """Immutable description of one launch request."""

    executable: str
    args: Tuple[str, ...] = ()
    environment: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    working_directory: Optional[str] = None
    limits: ResourceLimits = field(default_factory=ResourceLimits)
    slice: Optional[str] = None
    isolation: FrozenSet[Isolation] = frozenset()
    identity: Optional[Identity] = None
    stdin: Optional[InputSpec] = None
    stdout: Optional[OutputSpec] = None
    stderr: Optional[OutputSpec] = None
    mounts: Tuple[Mount, ...] = ()
    protect_proc: Optional[ProtectProc] = None
    cpu_scheduling: CpuScheduling = field(default_factory=CpuScheduling)
    joins_namespace_of: Tuple[str, ...] = ()
    collect_on_fail: bool = False
    timeout_stop_seconds: Optional[float] = None
    description: Optional[str] = None

    @property
    def argv(self) -> Tuple[str, ...]:
        return (self.executable, *self.args)
