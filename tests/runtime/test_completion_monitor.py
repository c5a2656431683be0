"""Completion Monitor: event correlation and outcome derivation."""

import asyncio

import pytest

from fakes import CLD_DUMPED, CLD_EXITED, CLD_KILLED, FakeControlBus, settle, terminal_properties
from sdrun.domain import ConnectionLostError, FailureReason, OutcomeKind
from sdrun.kernel.bus.events import UNIT_INTERFACE
from sdrun.runtime.completion_monitor import (
    CompletionMonitor,
    LaunchState,
    derive_outcome,
)

NAME = "sdrun-0123456789abcdef0123456789abcdef.service"


async def _launch(bus: FakeControlBus, monitor: CompletionMonitor, name: str = NAME):
    pending = monitor.register(name)
    job = await bus.create_and_start(name, [])
    monitor.attach_job(name, job)
    return pending


@pytest.fixture
def monitor(fake_bus):
    return CompletionMonitor(fake_bus)


class TestDeriveOutcome:

    def test_not_terminal(self):
        assert derive_outcome(NAME, {"ActiveState": "active", "ExecMainCode": 1}) is None

    def test_exited(self):
        outcome = derive_outcome(NAME, terminal_properties(CLD_EXITED, 3, "exit-code"))
        assert outcome.kind == OutcomeKind.EXITED
        assert outcome.exit_code == 3
        assert outcome.host_result == "exit-code"
        assert outcome.wall_time_us == 250_000

    def test_killed_and_dumped(self):
        killed = derive_outcome(NAME, terminal_properties(CLD_KILLED, 9, "oom-kill"))
        assert killed.kind == OutcomeKind.SIGNALED
        assert killed.signal == 9
        assert killed.core_dumped is False
        assert killed.host_result == "oom-kill"

        dumped = derive_outcome(NAME, terminal_properties(CLD_DUMPED, 11, "core-dump"))
        assert dumped.signal == 11
        assert dumped.core_dumped is True

    def test_setup_exit_code_means_never_started(self):
        outcome = derive_outcome(NAME, terminal_properties(CLD_EXITED, 203, "exit-code"))
        assert outcome.kind == OutcomeKind.ORCHESTRATOR_FAILURE
        assert outcome.reason == FailureReason.START_FAILED
        assert "EXEC" in outcome.detail
        assert not outcome.process_ran

    def test_terminal_without_main_process(self):
        outcome = derive_outcome(NAME, {"ActiveState": "failed", "ExecMainCode": 0, "Result": "resources"})
        assert outcome.reason == FailureReason.START_FAILED
        assert "resources" in outcome.detail


class TestResolution:

    @pytest.mark.asyncio
    async def test_exit_code_after_job_done(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)
        assert pending.state == LaunchState.AWAITING_EVENT

        fake_bus.exit_with(NAME, 7)
        outcome = await asyncio.wait_for(monitor.wait(pending), 1)

        assert outcome.kind == OutcomeKind.EXITED
        assert outcome.exit_code == 7
        assert pending.state == LaunchState.RESOLVED
        assert not monitor.is_pending(NAME)

    @pytest.mark.asyncio
    async def test_signal(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)

        fake_bus.kill_with(NAME, 9, result="oom-kill")
        outcome = await asyncio.wait_for(monitor.wait(pending), 1)

        assert outcome.kind == OutcomeKind.SIGNALED
        assert outcome.signal == 9
        assert outcome.host_result == "oom-kill"

    @pytest.mark.asyncio
    async def test_events_before_start_reply_are_not_lost(self, fake_bus, monitor):
        """Signals that beat the StartTransientUnit reply still resolve the launch."""
        await fake_bus.connect()
        monitor.start()
        fake_bus.on_start = lambda bus, name, job: bus.exit_with(name, 0)

        pending = monitor.register(NAME)
        job = await fake_bus.create_and_start(NAME, [])
        await settle()
        monitor.attach_job(NAME, job)

        outcome = await asyncio.wait_for(monitor.wait(pending), 1)
        assert outcome.success
        assert pending.job_path == job

    @pytest.mark.asyncio
    async def test_property_event_before_job_removal(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)

        fake_bus.emit_properties(NAME, **terminal_properties(CLD_EXITED, 1, "exit-code"))
        outcome = await asyncio.wait_for(monitor.wait(pending), 1)
        assert outcome.exit_code == 1

        # The late job removal for an already resolved unit is ignored.
        fake_bus.emit_job_removed(NAME, "done")
        await settle()
        assert ("get_unit_properties", NAME) not in fake_bus.calls

    @pytest.mark.asyncio
    async def test_job_done_then_final_read_resolves(self, fake_bus, monitor):
        """Job removal plus one property read is enough when no signal carried the status."""
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)

        fake_bus.final_properties[NAME] = terminal_properties(CLD_EXITED, 4, "exit-code")
        fake_bus.emit_job_removed(NAME, "done")
        outcome = await asyncio.wait_for(monitor.wait(pending), 1)

        assert outcome.exit_code == 4
        assert fake_bus.calls.count(("get_unit_properties", NAME)) == 1

    @pytest.mark.asyncio
    async def test_still_running_after_read_keeps_waiting(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)

        fake_bus.emit_job_removed(NAME, "done")
        await settle()
        assert not pending.future.done()

        fake_bus.emit_properties(NAME, ExecMainCode=CLD_EXITED, ExecMainStatus=0, Result="success")
        fake_bus.emit_properties(NAME, interface=UNIT_INTERFACE, ActiveState="inactive")
        outcome = await asyncio.wait_for(monitor.wait(pending), 1)
        assert outcome.success

    @pytest.mark.asyncio
    async def test_failed_start_job_is_not_a_process_exit(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)

        fake_bus.emit_job_removed(NAME, "failed")
        outcome = await asyncio.wait_for(monitor.wait(pending), 1)

        assert outcome.kind == OutcomeKind.ORCHESTRATOR_FAILURE
        assert outcome.reason == FailureReason.START_FAILED
        assert "failed" in outcome.detail

    @pytest.mark.asyncio
    async def test_terminal_without_exit_code_after_read(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)

        fake_bus.final_properties[NAME] = {"ActiveState": "failed", "ExecMainCode": 0, "Result": "resources"}
        fake_bus.emit_properties(NAME, interface=UNIT_INTERFACE, ActiveState="failed")
        await settle()
        assert not pending.future.done()

        fake_bus.emit_job_removed(NAME, "done")
        outcome = await asyncio.wait_for(monitor.wait(pending), 1)
        assert outcome.reason == FailureReason.START_FAILED
        assert outcome.host_result == "resources"

    @pytest.mark.asyncio
    async def test_unit_gone_before_read(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)

        fake_bus.missing_units.add(NAME)
        fake_bus.emit_job_removed(NAME, "done")
        outcome = await asyncio.wait_for(monitor.wait(pending), 1)
        assert outcome.reason == FailureReason.START_FAILED

    @pytest.mark.asyncio
    async def test_other_units_do_not_interfere(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)

        fake_bus.exit_with("someone-else.service", 1)
        fake_bus.emit_job_removed(NAME, "done", job_path="/org/freedesktop/systemd1/job/999")
        await settle()
        assert not pending.future.done()

        fake_bus.exit_with(NAME, 0)
        assert (await asyncio.wait_for(monitor.wait(pending), 1)).success


class TestFailureModes:

    @pytest.mark.asyncio
    async def test_disconnect_fails_every_pending_launch(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        names = [f"sdrun-{i:032x}.service" for i in range(5)]
        waits = [await _launch(fake_bus, monitor, name) for name in names]

        fake_bus.disconnect("bus restarted")
        outcomes = await asyncio.wait_for(
            asyncio.gather(*(monitor.wait(p) for p in waits)), 1
        )

        assert all(o.reason == FailureReason.CONNECTION_LOST for o in outcomes)
        assert all("bus restarted" in o.detail for o in outcomes)
        assert monitor.pending_count == 0
        with pytest.raises(ConnectionLostError):
            monitor.register("sdrun-late.service")

    @pytest.mark.asyncio
    async def test_shutdown_resolves_with_shutdown(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)

        await monitor.shutdown()
        outcome = await monitor.wait(pending)
        assert outcome.reason == FailureReason.SHUTDOWN
        with pytest.raises(RuntimeError):
            monitor.register("sdrun-late.service")

    @pytest.mark.asyncio
    async def test_abandon_never_resolves(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)

        monitor.abandon(NAME)
        fake_bus.exit_with(NAME, 0)
        await settle()

        assert pending.future.cancelled()
        assert not monitor.is_pending(NAME)

    @pytest.mark.asyncio
    async def test_resolved_at_most_once(self, fake_bus, monitor):
        await fake_bus.connect()
        monitor.start()
        pending = await _launch(fake_bus, monitor)

        fake_bus.exit_with(NAME, 2)
        fake_bus.kill_with(NAME, 15)
        fake_bus.disconnect()
        outcome = await asyncio.wait_for(monitor.wait(pending), 1)
        await settle()

        assert outcome.exit_code == 2
        assert pending.future.result() is outcome

    @pytest.mark.asyncio
    async def test_duplicate_registration_rejected(self, monitor):
        monitor.register(NAME)
        with pytest.raises(RuntimeError):
            monitor.register(NAME)
