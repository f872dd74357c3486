"""
Unit Tests for Run State Machine
Tests for: transition validation, cancellation, history, callbacks, run timer
"""
import time

import pytest

from buildloop.core.cancellation import CancellationToken
from buildloop.modules.orchestrator.state_machine import (
    ACTIVE_PHASES,
    RUN_TRANSITIONS,
    RunPhase,
    RunState,
    RunStateMachine,
    RunStateManager,
)


class TestTransitionTable:
    """Test the allowed run transitions"""

    @pytest.fixture
    def machine(self):
        return RunStateMachine("project-1")

    def test_starts_idle(self, machine):
        """Test a new machine is idle"""
        assert machine.state == RunPhase.IDLE

    def test_every_phase_has_entry(self):
        """Test the table covers all phases"""
        assert set(RUN_TRANSITIONS) == set(RunPhase)

    def test_valid_path(self, machine):
        """Test a full build-verify-correct path"""
        for phase in (RunPhase.BUILDING, RunPhase.VERIFYING, RunPhase.CORRECTING,
                      RunPhase.VERIFYING, RunPhase.IDLE):
            assert machine.transition(phase) is True
        assert machine.state == RunPhase.IDLE

    def test_invalid_transition_rejected(self, machine):
        """Test a transition outside the table is refused"""
        assert machine.transition(RunPhase.VERIFYING) is False
        assert machine.state == RunPhase.IDLE

    def test_awaiting_approval_only_to_idle(self, machine):
        """Test awaiting approval can only settle"""
        machine.transition(RunPhase.PLANNING)
        machine.transition(RunPhase.AWAITING_APPROVAL)
        assert machine.can_transition(RunPhase.BUILDING) is False
        assert machine.can_transition(RunPhase.IDLE) is True

    def test_force_skips_validation(self, machine):
        """Test forced transitions bypass the table"""
        assert machine.transition(RunPhase.CORRECTING, force=True) is True
        assert machine.state == RunPhase.CORRECTING


class TestCancel:
    """Test cancellation from each phase"""

    @pytest.mark.parametrize("phase", sorted(ACTIVE_PHASES, key=lambda p: p.value))
    def test_cancel_from_active_phase(self, phase):
        """Test every active phase can be cancelled"""
        machine = RunStateMachine("p")
        machine.transition(phase, force=True)
        assert machine.cancel() is True
        assert machine.state == RunPhase.CANCELLED
        assert machine.transition(RunPhase.IDLE) is True

    def test_cancel_idle_is_noop(self):
        """Test cancelling an idle machine does nothing"""
        machine = RunStateMachine("p")
        assert machine.cancel() is False
        assert machine.state == RunPhase.IDLE


class TestHistoryAndCallbacks:
    """Test transition history and listeners"""

    def test_history_recorded(self):
        """Test transitions are kept with reason and metadata"""
        machine = RunStateMachine("p")
        machine.transition(RunPhase.PLANNING, reason="New project", metadata={"run_id": "abc"})

        history = machine.get_history()
        assert len(history) == 1
        assert history[0].from_state == "idle"
        assert history[0].to_state == "planning"
        assert history[0].to_dict()["metadata"] == {"run_id": "abc"}

    def test_sync_callback(self):
        """Test sync callbacks see each transition"""
        machine = RunStateMachine("p")
        seen = []
        machine.on_transition(lambda old, new, t: seen.append((old, new)))

        machine.transition(RunPhase.BUILDING)

        assert seen == [(RunPhase.IDLE, RunPhase.BUILDING)]

    def test_failing_callback_does_not_block(self):
        """Test a raising callback does not undo the transition"""
        machine = RunStateMachine("p")

        def broken(old, new, t):
            raise RuntimeError("listener bug")

        machine.on_transition(broken)
        assert machine.transition(RunPhase.BUILDING) is True
        assert machine.state == RunPhase.BUILDING

    @pytest.mark.asyncio
    async def test_async_callback(self):
        """Test async callbacks run on transition_async"""
        machine = RunStateMachine("p")
        seen = []

        async def listener(old, new, transition):
            seen.append(transition.to_state)

        machine.on_transition_async(listener)
        assert await machine.transition_async(RunPhase.PLANNING) is True
        assert await machine.transition_async(RunPhase.CORRECTING) is False

        assert seen == ["planning"]

    def test_reset(self):
        """Test reset returns to idle and clears history"""
        machine = RunStateMachine("p")
        machine.transition(RunPhase.BUILDING)
        machine.reset()
        assert machine.state == RunPhase.IDLE
        assert machine.get_history() == []


class TestRunState:
    """Test per-project run data"""

    def test_defaults(self):
        """Test a fresh run state is idle and not cancellable"""
        state = RunState(project_id="p")
        assert state.is_idle
        assert state.is_cancellable is False
        assert state.elapsed_seconds == 0.0

    def test_cancellable_while_active(self):
        """Test an active run with a live token is cancellable"""
        state = RunState(project_id="p")
        state.token = CancellationToken()
        state.machine.transition(RunPhase.BUILDING)
        assert state.is_cancellable

        state.token.cancel()
        assert state.is_cancellable is False

    def test_timer(self):
        """Test the timer accumulates only while running"""
        state = RunState(project_id="p")
        state.start_timer()
        time.sleep(0.01)
        state.stop_timer()
        stopped = state.elapsed_seconds

        assert stopped > 0
        time.sleep(0.01)
        assert state.elapsed_seconds == stopped
        assert state.to_dict()["timer_running"] is False

    def test_manager(self):
        """Test run states are created once per project"""
        manager = RunStateManager()
        first = manager.get_or_create("p")
        assert manager.get_or_create("p") is first
        assert manager.list_projects() == ["p"]
        assert manager.remove("p") is first
        assert manager.get("p") is None
