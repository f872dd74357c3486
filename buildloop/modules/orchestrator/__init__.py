"""
Orchestrator Module

Run phase machine, cancellation, runtime error feedback and the
Run Orchestrator that ties them to the History Store and Oracle Gateway.
"""

from buildloop.core.cancellation import CancellationToken
from buildloop.modules.orchestrator.error_feedback_monitor import (
    ErrorFeedbackMonitor,
    VerificationOutcome,
    VerificationResult,
)
from buildloop.modules.orchestrator.run_orchestrator import (
    RunOrchestrator,
    RunResult,
    RunStatus,
    apply_changes,
)
from buildloop.modules.orchestrator.state_machine import (
    RunPhase,
    RunState,
    RunStateManager,
    RunStateMachine,
)

__all__ = [
    "CancellationToken",
    "ErrorFeedbackMonitor",
    "VerificationOutcome",
    "VerificationResult",
    "RunOrchestrator",
    "RunResult",
    "RunStatus",
    "apply_changes",
    "RunPhase",
    "RunState",
    "RunStateManager",
    "RunStateMachine",
]
