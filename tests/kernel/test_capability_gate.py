"""Capability Gate: per-level property translation and IPC-free rejection."""

import pytest

from sdrun.domain import (
    BusTarget,
    CapabilityLevel,
    CpuScheduling,
    CpuSchedulingPolicy,
    Feature,
    GiB,
    Identity,
    InputSpec,
    InvalidSpecError,
    Isolation,
    MiB,
    Mount,
    OutputSpec,
    ProtectProc,
    ResourceLimits,
    RLimit,
    UnitSpec,
    UnsupportedLimitError,
)
from sdrun.kernel.units.capability_gate import MS_REC, CapabilityGate, cpu_set_mask

L = CapabilityLevel


def _props(spec, level=L.V252, **kwargs):
    return {p.name: p for p in CapabilityGate(level, **kwargs).translate(spec)}


def _spec(**kwargs) -> UnitSpec:
    return UnitSpec(executable="/usr/bin/env", args=("true",), **kwargs)


class TestCapabilityLevel:

    @pytest.mark.parametrize("raw", ["v231", "231", "systemd_231", " V231 "])
    def test_parse_forms(self, raw):
        assert CapabilityLevel.parse(raw) is L.V231

    def test_parse_unknown(self):
        with pytest.raises(ValueError, match="unknown capability level"):
            CapabilityLevel.parse("v999")

    def test_ordering(self):
        assert L.V188 < L.V208 < L.V252
        assert max(L) is L.V252 is CapabilityLevel.latest()


class TestFeatureTable:

    def test_unified_cgroup_is_not_monotonic(self):
        gate = lambda level: CapabilityGate(level).supports(Feature.UNIFIED_CGROUP)
        assert not gate(L.V213)
        assert not gate(L.V226)
        assert not gate(L.V227)
        assert not gate(L.V229)
        assert gate(L.V230)
        assert gate(L.V252)

    def test_unified_dependent_features_need_the_host_flag(self):
        assert CapabilityGate(L.V252).supports(Feature.ALLOWED_CPUS)
        assert not CapabilityGate(L.V252, unified_cgroup=False).supports(Feature.ALLOWED_CPUS)

    def test_required_for_mentions_unified_cgroup(self):
        gate = CapabilityGate(L.V252, unified_cgroup=False)
        assert gate.required_for(Feature.MEMORY_SWAP_MAX) == "v232+unified_cgroup"


class TestTranslate:

    def test_base_properties_at_latest_level(self):
        props = _props(_spec(description="judge run"))
        assert props["Description"].value == "judge run"
        assert props["ExecStart"].signature == "a(sasb)"
        assert props["ExecStart"].value == [["/usr/bin/env", ["/usr/bin/env", "true"], False]]
        assert props["Type"].value == "exec"
        assert props["AddRef"].value is True
        assert props["CollectMode"].value == "inactive-or-failed"

    def test_old_level_omits_exec_type_and_add_ref(self):
        props = _props(_spec(), L.V231)
        assert "Type" not in props
        assert "AddRef" not in props
        assert "CollectMode" not in props

    def test_collect_on_fail_is_emitted_once(self):
        names = [p.name for p in CapabilityGate(L.V252).translate(_spec(collect_on_fail=True))]
        assert names.count("CollectMode") == 1
        with pytest.raises(UnsupportedLimitError):
            CapabilityGate(L.V231).translate(_spec(collect_on_fail=True))

    def test_translation_is_deterministic(self):
        spec = _spec(
            environment={"B": "2", "A": "1"},
            limits=ResourceLimits(memory_max=256 * MiB, cpu_quota=0.5, tasks_max=16),
            isolation=frozenset({Isolation.PRIVATE_NETWORK, Isolation.NO_NEW_PRIVILEGES}),
        )
        gate = CapabilityGate(L.V240)
        assert gate.translate(spec) == gate.translate(spec)

    def test_memory_max_versus_legacy_memory_limit(self):
        spec = _spec(limits=ResourceLimits(memory_max=1 * GiB))
        assert _props(spec, L.V231)["MemoryMax"].value == GiB
        legacy = _props(spec, L.V230)
        assert "MemoryMax" not in legacy
        assert legacy["MemoryLimit"].value == GiB
        assert "MemoryLimit" in _props(spec, L.V208)

    def test_memory_below_minimum_raises_before_any_io(self):
        spec = _spec(limits=ResourceLimits(memory_max=64 * MiB))
        with pytest.raises(UnsupportedLimitError) as exc_info:
            CapabilityGate(L.V188).translate(spec)
        assert exc_info.value.limit_kind == "memory_max"
        assert exc_info.value.required == "v208"

    @pytest.mark.parametrize(
        "limits, level, kind",
        [
            (ResourceLimits(cpu_quota=0.5), L.V208, "cpu_quota"),
            (ResourceLimits(tasks_max=8), L.V226, "tasks_max"),
            (ResourceLimits(runtime_max_seconds=5), L.V227, "runtime_max"),
            (ResourceLimits(allowed_cpus=(0,)), L.V240, "allowed_cpus"),
            (ResourceLimits(memory_swap_max=0), L.V231, "memory_swap_max"),
        ],
    )
    def test_limit_minimums(self, limits, level, kind):
        with pytest.raises(UnsupportedLimitError) as exc_info:
            CapabilityGate(level).translate(_spec(limits=limits))
        assert exc_info.value.limit_kind == kind

    def test_allowed_cpus_needs_unified_cgroup(self):
        spec = _spec(limits=ResourceLimits(allowed_cpus=(0, 9)))
        assert _props(spec)["AllowedCPUs"].value == cpu_set_mask((0, 9)) == b"\x01\x02"
        with pytest.raises(UnsupportedLimitError):
            CapabilityGate(L.V252, unified_cgroup=False).translate(spec)

    def test_cpu_quota_and_tasks(self):
        props = _props(_spec(limits=ResourceLimits(cpu_quota=0.25, tasks_max=32)))
        assert props["CPUQuotaPerSecUSec"].value == 250_000
        assert props["TasksMax"].value == 32

    def test_tiny_cpu_quota_never_rounds_to_zero(self):
        props = _props(_spec(limits=ResourceLimits(cpu_quota=1e-9)))
        assert props["CPUQuotaPerSecUSec"].value == 1

    def test_rlimits(self):
        props = _props(_spec(limits=ResourceLimits(nofile=RLimit(64, 128), core=RLimit.both(0))))
        assert props["LimitNOFILE"].value == 128
        assert props["LimitNOFILESoft"].value == 64
        assert props["LimitCORE"].value == 0

    def test_false_isolation_flags_never_emitted(self):
        props = _props(_spec(isolation=frozenset({Isolation.NO_NEW_PRIVILEGES})))
        assert props["NoNewPrivileges"].value is True
        assert "PrivateNetwork" not in props
        assert "PrivateIPC" not in props

    def test_private_ipc_needs_v248(self):
        spec = _spec(isolation=frozenset({Isolation.PRIVATE_IPC}))
        assert "PrivateIPC" in _props(spec, L.V248)
        with pytest.raises(UnsupportedLimitError):
            CapabilityGate(L.V247).translate(spec)

    def test_identity_on_session_bus_is_invalid(self):
        spec = _spec(identity=Identity.user_group("nobody"))
        with pytest.raises(InvalidSpecError):
            CapabilityGate(L.V252, bus=BusTarget.SESSION).translate(spec)

    def test_identity_on_system_bus(self):
        props = _props(_spec(identity=Identity.user_group("judge", "judges")))
        assert props["User"].value == "judge"
        assert props["Group"].value == "judges"
        assert _props(_spec(identity=Identity.dynamic()))["DynamicUser"].value is True

    def test_mounts(self):
        spec = _spec(mounts=(
            Mount.bind("/srv/data", "/data", recursive=True),
            Mount.bind("/srv/rw", "/rw", writable=True),
            Mount.tmpfs("/tmp", writable=True, options=("size=8M",)),
            Mount.image("/img/root.raw", "/mnt"),
        ))
        props = _props(spec)
        assert props["BindReadOnlyPaths"].value == [["/srv/data", "/data", False, MS_REC]]
        assert props["BindPaths"].value == [["/srv/rw", "/rw", False, 0]]
        assert props["TemporaryFileSystem"].value == [["/tmp", "size=8M"]]
        assert props["MountImages"].value == [["/img/root.raw", "/mnt", False, [["root", "ro"]]]]

    def test_mount_path_escaping(self):
        props = _props(_spec(mounts=(Mount.tmpfs("/with space:colon"),)))
        assert props["TemporaryFileSystem"].value == [["/with\\ space\\:colon", "ro"]]

    def test_stdio(self):
        props = _props(_spec(
            stdin=InputSpec.file("/in"),
            stdout=OutputSpec.append("/out"),
            stderr=OutputSpec.journal(),
        ))
        assert props["StandardInputFile"].value == "/in"
        assert props["StandardOutputFileToAppend"].value == "/out"
        assert props["StandardError"].value == "journal"

    def test_truncate_needs_v248(self):
        with pytest.raises(UnsupportedLimitError) as exc_info:
            CapabilityGate(L.V240).translate(_spec(stdout=OutputSpec.truncate("/out")))
        assert exc_info.value.required == "v248"

    def test_scheduling_and_protect_proc(self):
        props = _props(_spec(
            cpu_scheduling=CpuScheduling(CpuSchedulingPolicy.FIFO, 20, reset_on_fork=True),
            protect_proc=ProtectProc.INVISIBLE,
        ))
        assert props["CPUSchedulingPolicy"].value == 1
        assert props["CPUSchedulingPriority"].value == 20
        assert props["CPUSchedulingResetOnFork"].value is True
        assert props["ProtectProc"].value == "invisible"
