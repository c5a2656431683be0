"""Capability Gate / Resource-Limit Translator.

Turns a validated ``UnitSpec`` into the ordered ``StartTransientUnit``
property list for one host capability level. No I/O happens here: a limit
the host cannot enforce is rejected with ``UnsupportedLimitError`` before
the bus is touched, so a unit is never created half-configured.

The same ``(spec, level, unified_cgroup, bus)`` always yields the same list.
"""

from __future__ import annotations

from typing import Any, List, NamedTuple, Optional, Tuple

from sdrun.domain.capability import (
    FEATURE_SUPPORT,
    CapabilityLevel,
    Feature,
)
from sdrun.domain.errors import InvalidSpecError, UnsupportedLimitError
from sdrun.domain.units import (
    BusTarget,
    IdentityKind,
    InputSpec,
    Isolation,
    Mount,
    MountKind,
    OutputSpec,
    RLimit,
    StdioKind,
    UnitSpec,
)

U64_MAX = (1 << 64) - 1
USEC_PER_SEC = 1_000_000
MS_REC = 16384

# Emission order of isolation flags; false flags are never sent since old
# hosts reject properties they do not know.
_ISOLATION_ORDER: Tuple[Tuple[Isolation, Feature], ...] = (
    (Isolation.PRIVATE_NETWORK, Feature.PRIVATE_NETWORK),
    (Isolation.PRIVATE_IPC, Feature.PRIVATE_IPC),
    (Isolation.MOUNT_API_VFS, Feature.MOUNT_API_VFS),
    (Isolation.PRIVATE_DEVICES, Feature.PRIVATE_DEVICES),
    (Isolation.NO_NEW_PRIVILEGES, Feature.NO_NEW_PRIVILEGES),
    (Isolation.PRIVATE_USERS, Feature.PRIVATE_USERS),
)

_STDIO_FEATURE = {
    StdioKind.FILE: (Feature.STDIO_FILE, "File"),
    StdioKind.TRUNCATE: (Feature.STDIO_TRUNCATE, "FileToTruncate"),
    StdioKind.APPEND: (Feature.STDIO_APPEND, "FileToAppend"),
}


class UnitProperty(NamedTuple):
    """One ``(sv)`` entry: property name, D-Bus signature, plain value."""

    name: str
    signature: str
    value: Any


def _clamp_u64(value: int) -> int:
    return max(0, min(int(value), U64_MAX))


def _seconds_to_usec(seconds: float) -> int:
    return _clamp_u64(round(seconds * USEC_PER_SEC))


def _escape_mount_path(path: str) -> str:
    return path.replace("\\", "\\\\").replace(":", "\\:").replace(" ", "\\ ")


def cpu_set_mask(cpus: Tuple[int, ...]) -> bytes:
    """Little-endian CPU bitmask as systemd's ``AllowedCPUs`` expects."""
    mask = bytearray()
    for cpu in cpus:
        index, bit = divmod(cpu, 8)
        if len(mask) <= index:
            mask.extend(b"\x00" * (index + 1 - len(mask)))
        mask[index] |= 1 << bit
    return bytes(mask)


class CapabilityGate:
    """Validates a spec against one host capability level and translates it.

    Usage:
        gate = CapabilityGate(CapabilityLevel.V252)
        properties = gate.translate(spec)
    """

    def __init__(
        self,
        level: CapabilityLevel = CapabilityLevel.V252,
        *,
        unified_cgroup: bool = True,
        bus: BusTarget = BusTarget.SYSTEM,
    ):
        self.level = CapabilityLevel.parse(level)
        self.unified_cgroup = unified_cgroup
        self.bus = BusTarget(bus)

    # ------------------------------------------------------------------
    # Capability queries
    # ------------------------------------------------------------------

    def _unified_available(self) -> bool:
        return self.unified_cgroup and FEATURE_SUPPORT[
            Feature.UNIFIED_CGROUP
        ].available_at(self.level)

    def supports(self, feature: Feature) -> bool:
        support = FEATURE_SUPPORT[feature]
        if not support.available_at(self.level):
            return False
        if support.needs_unified_cgroup and not self._unified_available():
            return False
        return True

    def required_for(self, feature: Feature) -> str:
        """Describe the lowest configuration that would allow ``feature``."""
        support = FEATURE_SUPPORT[feature]
        needed = _first_available(feature)
        if support.needs_unified_cgroup:
            unified_from = _first_available(Feature.UNIFIED_CGROUP)
            if unified_from is not None and (needed is None or unified_from > needed):
                needed = unified_from
            if not self.unified_cgroup:
                return f"{needed.value}+unified_cgroup" if needed else "unified_cgroup"
        return needed.value if needed else "unavailable"

    def require(self, feature: Feature, limit_kind: str) -> None:
        if not self.supports(feature):
            raise UnsupportedLimitError(limit_kind, self.required_for(feature))

    # ------------------------------------------------------------------
    # Translation
    # ------------------------------------------------------------------

    def translate(self, spec: UnitSpec) -> List[UnitProperty]:
        """Produce the ordered property list for ``StartTransientUnit``.

        Raises:
            UnsupportedLimitError: a requested setting needs a higher level
            InvalidSpecError: identity settings on a per-session manager
        """
        props: List[UnitProperty] = []
        add = props.append

        add(UnitProperty("Description", "s", spec.description or spec.executable))
        add(UnitProperty(
            "ExecStart", "a(sasb)", [[spec.executable, list(spec.argv), False]]
        ))
        if self.supports(Feature.EXEC_SERVICE_TYPE):
            add(UnitProperty("Type", "s", "exec"))
        pinned = self.supports(Feature.ADD_REF)
        if pinned:
            add(UnitProperty("AddRef", "b", True))
        if spec.collect_on_fail:
            self.require(Feature.COLLECT_MODE, "collect_on_fail")
        # AddRef holds a failed unit until cleanup drops the reference, after
        # which the manager unloads it even if it failed late.
        if spec.collect_on_fail or pinned:
            add(UnitProperty("CollectMode", "s", "inactive-or-failed"))

        if spec.working_directory is not None:
            self.require(Feature.WORKING_DIRECTORY, "working_directory")
            add(UnitProperty("WorkingDirectory", "s", spec.working_directory))
        if spec.slice is not None:
            add(UnitProperty("Slice", "s", spec.slice))
        if spec.environment:
            add(UnitProperty(
                "Environment", "as",
                [f"{key}={value}" for key, value in spec.environment.items()],
            ))
        if spec.joins_namespace_of:
            self.require(Feature.JOINS_NAMESPACE_OF, "joins_namespace_of")
            add(UnitProperty("JoinsNamespaceOf", "as", list(spec.joins_namespace_of)))
        if spec.protect_proc is not None:
            self.require(Feature.PROTECT_PROC, "protect_proc")
            add(UnitProperty("ProtectProc", "s", spec.protect_proc.value))

        props.extend(self._identity_properties(spec))
        props.extend(self._limit_properties(spec))

        for flag, feature in _ISOLATION_ORDER:
            if flag in spec.isolation:
                self.require(feature, flag.value)
                add(UnitProperty(flag.value, "b", True))

        props.extend(self._mount_properties(spec.mounts))
        props.extend(self._stdio_properties(spec))

        sched = spec.cpu_scheduling
        add(UnitProperty("CPUSchedulingPolicy", "i", sched.policy.value))
        add(UnitProperty("CPUSchedulingResetOnFork", "b", sched.reset_on_fork))
        if sched.real_time_priority is not None:
            add(UnitProperty("CPUSchedulingPriority", "i", sched.real_time_priority))

        return props

    def _identity_properties(self, spec: UnitSpec) -> List[UnitProperty]:
        identity = spec.identity
        if identity is None:
            return []
        if self.bus == BusTarget.SESSION:
            raise InvalidSpecError(
                "identity settings need the system service manager"
            )
        if identity.kind == IdentityKind.DYNAMIC:
            self.require(Feature.DYNAMIC_USER, "dynamic_user")
            return [UnitProperty("DynamicUser", "b", True)]
        return [
            UnitProperty("User", "s", identity.user),
            UnitProperty("Group", "s", identity.group or identity.user),
        ]

    def _limit_properties(self, spec: UnitSpec) -> List[UnitProperty]:
        limits = spec.limits
        props: List[UnitProperty] = []
        add = props.append

        if limits.runtime_max_seconds is not None:
            self.require(Feature.RUNTIME_MAX, "runtime_max")
            add(UnitProperty(
                "RuntimeMaxUSec", "t", _seconds_to_usec(limits.runtime_max_seconds)
            ))
        if spec.timeout_stop_seconds is not None:
            add(UnitProperty(
                "TimeoutStopUSec", "t", _seconds_to_usec(spec.timeout_stop_seconds)
            ))

        if limits.allowed_cpus:
            self.require(Feature.ALLOWED_CPUS, "allowed_cpus")
            add(UnitProperty("AllowedCPUs", "ay", cpu_set_mask(limits.allowed_cpus)))

        if limits.tasks_max is not None:
            self.require(Feature.TASKS_MAX, "tasks_max")
            add(UnitProperty("TasksMax", "t", _clamp_u64(limits.tasks_max)))

        for name, rlim in (("NPROC", limits.nproc), ("NOFILE", limits.nofile)):
            props.extend(_rlimit_properties(name, rlim))

        if limits.memory_max is not None:
            add(UnitProperty(
                self._memory_property_name(), "t", _clamp_u64(limits.memory_max)
            ))
        if limits.memory_swap_max is not None:
            self.require(Feature.MEMORY_SWAP_MAX, "memory_swap_max")
            add(UnitProperty("MemorySwapMax", "t", _clamp_u64(limits.memory_swap_max)))

        for name, rlim in (
            ("FSIZE", limits.fsize),
            ("STACK", limits.stack),
            ("CORE", limits.core),
        ):
            props.extend(_rlimit_properties(name, rlim))

        if limits.cpu_quota is not None:
            self.require(Feature.CPU_QUOTA, "cpu_quota")
            usec = max(1, _clamp_u64(round(limits.cpu_quota * USEC_PER_SEC)))
            add(UnitProperty("CPUQuotaPerSecUSec", "t", usec))

        return props

    def _memory_property_name(self) -> str:
        # The legacy name stays valid on hosts that predate MemoryMax.
        if self.supports(Feature.MEMORY_MAX):
            return Feature.MEMORY_MAX.value
        self.require(Feature.MEMORY_LIMIT, "memory_max")
        return Feature.MEMORY_LIMIT.value

    def _mount_properties(self, mounts: Tuple[Mount, ...]) -> List[UnitProperty]:
        bind: list = []
        bind_ro: list = []
        images: list = []
        tmpfs: list = []

        for mount in mounts:
            dest = _escape_mount_path(mount.destination)
            if mount.kind == MountKind.BIND:
                self.require(Feature.BIND_PATHS, "bind_mount")
                entry = [
                    _escape_mount_path(mount.source or ""),
                    dest,
                    mount.ignore_nonexistent,
                    MS_REC if mount.recursive else 0,
                ]
                (bind if mount.writable else bind_ro).append(entry)
            elif mount.kind == MountKind.TMPFS:
                self.require(Feature.TEMPORARY_FILE_SYSTEM, "tmpfs_mount")
                options = list(mount.options)
                if not mount.writable:
                    options.append("ro")
                tmpfs.append([dest, ",".join(options)])
            else:
                self.require(Feature.MOUNT_IMAGES, "image_mount")
                options = list(mount.options)
                if not mount.writable:
                    options.append("ro")
                images.append([
                    _escape_mount_path(mount.source or ""),
                    dest,
                    mount.ignore_nonexistent,
                    [["root", option] for option in options],
                ])

        props: List[UnitProperty] = []
        if bind:
            props.append(UnitProperty("BindPaths", "a(ssbt)", bind))
        if bind_ro:
            props.append(UnitProperty("BindReadOnlyPaths", "a(ssbt)", bind_ro))
        if images:
            props.append(UnitProperty("MountImages", "a(ssba(ss))", images))
        if tmpfs:
            props.append(UnitProperty("TemporaryFileSystem", "a(ss)", tmpfs))
        return props

    def _stdio_properties(self, spec: UnitSpec) -> List[UnitProperty]:
        props: List[UnitProperty] = []
        for prefix, stdio in (
            ("StandardInput", spec.stdin),
            ("StandardOutput", spec.stdout),
            ("StandardError", spec.stderr),
        ):
            prop = self._stdio_property(prefix, stdio)
            if prop is not None:
                props.append(prop)
        return props

    def _stdio_property(
        self,
        prefix: str,
        stdio: "InputSpec | OutputSpec | None",
    ) -> Optional[UnitProperty]:
        if stdio is None:
            return None
        if stdio.kind in _STDIO_FEATURE:
            feature, suffix = _STDIO_FEATURE[stdio.kind]
            self.require(feature, f"{prefix}{suffix}")
            return UnitProperty(prefix + suffix, "s", stdio.path)
        return UnitProperty(prefix, "s", stdio.kind.value)


def _rlimit_properties(name: str, rlim: Optional[RLimit]) -> List[UnitProperty]:
    if rlim is None:
        return []
    soft = min(rlim.soft, rlim.hard)
    return [
        UnitProperty(f"Limit{name}", "t", _clamp_u64(rlim.hard)),
        UnitProperty(f"Limit{name}Soft", "t", _clamp_u64(soft)),
    ]


def _first_available(feature: Feature) -> Optional[CapabilityLevel]:
    support = FEATURE_SUPPORT[feature]
    for level in CapabilityLevel:
        if support.available_at(level):
            return level
    return None
