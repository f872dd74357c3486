"""
Run State Machine

One explicit phase per project replaces scattered loading/verifying
flags. The UI derives everything it shows from RunState.

┌──────────────────────────────────────────────────────────────────┐
│  IDLE → PLANNING → AWAITING_APPROVAL → IDLE                      │
│    │        │                                                    │
│    └──→ BUILDING → VERIFYING ⇄ CORRECTING → IDLE                 │
│                                                                  │
│  PLANNING / BUILDING / VERIFYING / CORRECTING → CANCELLED → IDLE │
└──────────────────────────────────────────────────────────────────┘

All transitions are validated against the table and logged.
"""

from typing import Dict, Any, Optional, Callable, List, Set
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
import threading
import time
from collections import deque

from buildloop.core.logging_config import logger
from buildloop.core.cancellation import CancellationToken


class RunPhase(str, Enum):
    """Generation run phases"""
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    BUILDING = "building"
    VERIFYING = "verifying"
    CORRECTING = "correcting"
    CANCELLED = "cancelled"


# Valid state transitions
RUN_TRANSITIONS: Dict[RunPhase, Set[RunPhase]] = {
    RunPhase.IDLE: {RunPhase.PLANNING, RunPhase.BUILDING},
    RunPhase.PLANNING: {RunPhase.AWAITING_APPROVAL, RunPhase.VERIFYING, RunPhase.IDLE, RunPhase.CANCELLED},
    RunPhase.AWAITING_APPROVAL: {RunPhase.IDLE},
    RunPhase.BUILDING: {RunPhase.VERIFYING, RunPhase.AWAITING_APPROVAL, RunPhase.IDLE, RunPhase.CANCELLED},
    RunPhase.VERIFYING: {RunPhase.CORRECTING, RunPhase.IDLE, RunPhase.CANCELLED},
    RunPhase.CORRECTING: {RunPhase.VERIFYING, RunPhase.IDLE, RunPhase.CANCELLED},
    RunPhase.CANCELLED: {RunPhase.IDLE},
}

# Phases with an oracle call or verification wait in flight
ACTIVE_PHASES = {RunPhase.PLANNING, RunPhase.BUILDING, RunPhase.VERIFYING, RunPhase.CORRECTING}


@dataclass
class StateTransition:
    """Record of a state transition"""
    from_state: str
    to_state: str
    timestamp: datetime = field(default_factory=datetime.utcnow)
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_state,
            "to": self.to_state,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "metadata": self.metadata
        }


class StateMachine:
    """
    Generic state machine with validation and callbacks.

    Features:
    - Validates transitions against allowed transitions
    - Maintains transition history
    - Supports sync and async callbacks on state change
    - Thread-safe
    """

    def __init__(
        self,
        name: str,
        initial_state: Enum,
        transitions: Dict[Enum, Set[Enum]],
        max_history: int = 100
    ):
        self.name = name
        self._initial_state = initial_state
        self._state = initial_state
        self._transitions = transitions
        self._lock = threading.Lock()
        self._history: deque = deque(maxlen=max_history)
        self._callbacks: List[Callable] = []
        self._async_callbacks: List[Callable] = []

    @property
    def state(self) -> Enum:
        """Get current state"""
        with self._lock:
            return self._state

    def can_transition(self, to_state: Enum) -> bool:
        """Check if transition is valid"""
        with self._lock:
            return to_state in self._transitions.get(self._state, set())

    def transition(
        self,
        to_state: Enum,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        force: bool = False
    ) -> bool:
        """
        Transition to new state.

        Args:
            to_state: Target state
            reason: Why the transition is happening
            metadata: Additional data about the transition
            force: Skip validation (use with caution)

        Returns:
            True if transition succeeded
        """
        with self._lock:
            allowed = self._transitions.get(self._state, set())
            if not force and to_state not in allowed:
                logger.warning(
                    f"[{self.name}] Invalid transition: {self._state.value} → {to_state.value}. "
                    f"Allowed: {[s.value for s in allowed]}"
                )
                return False

            transition = StateTransition(
                from_state=self._state.value,
                to_state=to_state.value,
                reason=reason,
                metadata=metadata or {}
            )
            self._history.append(transition)

            old_state = self._state
            self._state = to_state

        logger.log_transition(self.name, old_state.value, to_state.value, reason)

        # Call sync callbacks outside lock
        for callback in self._callbacks:
            try:
                callback(old_state, to_state, transition)
            except Exception as e:
                logger.error(f"[{self.name}] Callback error: {e}")

        return True

    async def transition_async(
        self,
        to_state: Enum,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        force: bool = False
    ) -> bool:
        """Async version of transition with async callbacks"""
        old_state = self.state
        success = self.transition(to_state, reason, metadata, force)

        if success:
            for callback in self._async_callbacks:
                try:
                    await callback(old_state, to_state, self._history[-1])
                except Exception as e:
                    logger.error(f"[{self.name}] Async callback error: {e}")

        return success

    def on_transition(self, callback: Callable):
        """Register sync callback for state transitions"""
        self._callbacks.append(callback)

    def on_transition_async(self, callback: Callable):
        """Register async callback for state transitions"""
        self._async_callbacks.append(callback)

    def get_history(self, limit: int = 10) -> List[StateTransition]:
        """Get recent transition history"""
        with self._lock:
            return list(self._history)[-limit:]

    def reset(self, initial_state: Optional[Enum] = None):
        """Reset state machine"""
        with self._lock:
            self._state = initial_state or self._initial_state
            self._history.clear()


class RunStateMachine(StateMachine):
    """Phase machine for one project's generation runs"""

    def __init__(self, project_id: str):
        super().__init__(
            name=f"Run:{project_id}",
            initial_state=RunPhase.IDLE,
            transitions=RUN_TRANSITIONS
        )
        self.project_id = project_id

    def cancel(self) -> bool:
        """Cancel the active run"""
        if self.state not in ACTIVE_PHASES:
            return False
        return self.transition(RunPhase.CANCELLED, reason="Cancelled by user")


@dataclass
class RunState:
    """
    Ephemeral run data for one project. Never persisted.

    `token` and `run_id` belong to the current run; a run that finds
    a different `run_id` here has been superseded and must not touch
    the state.
    """
    project_id: str
    machine: RunStateMachine = None
    token: Optional[CancellationToken] = None
    run_id: Optional[str] = None
    started_at: Optional[float] = None  # monotonic
    elapsed: float = 0.0
    timer_running: bool = False
    last_retry_count: int = 0
    correction_attempts: int = 0

    def __post_init__(self):
        if self.machine is None:
            self.machine = RunStateMachine(self.project_id)

    @property
    def phase(self) -> RunPhase:
        return self.machine.state

    @property
    def is_idle(self) -> bool:
        return self.machine.state == RunPhase.IDLE

    @property
    def is_cancellable(self) -> bool:
        return self.token is not None and not self.token.cancelled and self.machine.state in ACTIVE_PHASES

    @property
    def elapsed_seconds(self) -> float:
        if self.timer_running and self.started_at is not None:
            return self.elapsed + (time.monotonic() - self.started_at)
        return self.elapsed

    def start_timer(self) -> None:
        self.started_at = time.monotonic()
        self.elapsed = 0.0
        self.timer_running = True

    def stop_timer(self) -> None:
        if self.timer_running and self.started_at is not None:
            self.elapsed += time.monotonic() - self.started_at
        self.timer_running = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "phase": self.phase.value,
            "run_id": self.run_id,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "timer_running": self.timer_running,
            "cancellable": self.is_cancellable,
            "last_retry_count": self.last_retry_count,
            "correction_attempts": self.correction_attempts,
            "recent_transitions": [t.to_dict() for t in self.machine.get_history(10)]
        }


class RunStateManager:
    """
    RunState per project, created lazily.

    Owned by the Run Orchestrator; keyed by project id but kept apart
    from Project so run data never reaches persisted state.
    """

    def __init__(self):
        self._states: Dict[str, RunState] = {}
        self._lock = threading.Lock()

    def get_or_create(self, project_id: str) -> RunState:
        with self._lock:
            if project_id not in self._states:
                self._states[project_id] = RunState(project_id=project_id)
                logger.debug(f"[RunStateManager] Created run state for project {project_id}")
            return self._states[project_id]

    def get(self, project_id: str) -> Optional[RunState]:
        with self._lock:
            return self._states.get(project_id)

    def remove(self, project_id: str) -> Optional[RunState]:
        with self._lock:
            state = self._states.pop(project_id, None)
        if state is not None:
            logger.debug(f"[RunStateManager] Removed run state for project {project_id}")
        return state

    def list_projects(self) -> List[str]:
        with self._lock:
            return list(self._states.keys())
