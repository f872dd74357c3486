"""
Run Orchestrator

Drives one project's generation runs through the phase machine:

    user message → PLANNING (new project) or BUILDING (existing code / approved plan)
    PLAN        → commit plan, AWAITING_APPROVAL → IDLE
    MODIFY_CODE → apply atomically, clear telemetry, VERIFYING
    VERIFYING   → clean: IDLE / erroring: CORRECTING → oracle again → VERIFYING
    CHAT        → append reply, IDLE

Every change to transcript or files is exactly one History commit.
Cancellation fires the run's token, appends the cancellation notice and
returns the project to IDLE immediately; the aborted call commits nothing.
Whatever happens, a run always leaves its project IDLE.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from buildloop.core.config import settings
from buildloop.core.exceptions import (
    BuildLoopError,
    GenerationCancelledError,
    MessageNotFoundError,
    NoPendingPlanError,
    OracleError,
    QuotaExceededError,
    RunInProgressError,
    TransientServerError,
)
from buildloop.core.logging_config import logger, generate_run_id, set_project_id, set_run_id
from buildloop.core.cancellation import CancellationToken
from buildloop.modules.orchestrator.error_feedback_monitor import (
    ErrorFeedbackMonitor,
    VerificationOutcome,
    VerificationResult,
)
from buildloop.modules.orchestrator.state_machine import (
    ACTIVE_PHASES,
    RunPhase,
    RunState,
    RunStateManager,
)
from buildloop.schemas.oracle import ChatResponse, ModifyCodeResponse, PlanResponse
from buildloop.schemas.project import (
    Change,
    ChangeAction,
    ConsoleMessage,
    FileAttachment,
    Message,
    MessageAction,
    MessageRole,
    Modification,
    Plan,
    Project,
    StateSnapshot,
)
from buildloop.services.history_store import DEFAULT_PROJECT_NAME, HistoryStore
from buildloop.services.oracle_gateway import OracleGateway, OracleSession
from buildloop.services.telemetry_bus import TelemetryBuffer, TelemetryRegistry


APPROVAL_MESSAGE = "Looks good, proceed with building the project."
CANCELLED_MESSAGE = "AI generation cancelled."
GO_TO_PREVIEW_MESSAGE = "Go to Preview"
PLAN_MESSAGE = "I've drafted a plan for your project, **{name}**. Please review it below."
SELF_CORRECTION_PREFIX = "**Self-Correction:** "
CORRECTION_PREFIX = "The code you just generated produced the following errors: "
QUOTA_MESSAGE = (
    "The AI service is rate limited right now. Please wait a minute and send your message again."
)
TRANSIENT_MESSAGE = (
    "The AI service is temporarily unavailable. Please try again in a few moments."
)
ERROR_MESSAGE = "Sorry, I encountered an error: {cause}"
UNRESOLVED_MESSAGE = (
    "I tried to fix the runtime errors {attempts} time(s), but the app still reports errors:\n\n{errors}\n\n"
    "Describe what you see or ask me to try again."
)
PROJECT_NAME_LENGTH = 30
MAX_CAUSE_LENGTH = 300


class RunStatus(str, Enum):
    """How a run ended"""
    SUCCEEDED = "succeeded"
    AWAITING_APPROVAL = "awaiting_approval"
    ANSWERED = "answered"
    UNRESOLVED_ERRORS = "unresolved_errors"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class RunResult:
    project_id: str
    status: RunStatus
    run_id: Optional[str] = None
    corrections: int = 0
    error: Optional[str] = None
    verification: Optional[VerificationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "status": self.status.value,
            "run_id": self.run_id,
            "corrections": self.corrections,
            "error": self.error,
            "verification": self.verification.to_dict() if self.verification else None,
        }


# ============================================
# Pure helpers
# ============================================

def apply_changes(files: Dict[str, str], changes: List[Change]) -> Dict[str, str]:
    """
    Apply file changes in order and return the new file map.

    create and update are both upserts; deleting a missing path is a no-op.
    The input map is not modified.
    """
    result = dict(files)
    for change in changes:
        if change.action == ChangeAction.DELETE:
            result.pop(change.file_path, None)
        else:
            result[change.file_path] = change.content or ""
    return result


def strip_approval_tags(messages: List[Message]) -> List[Message]:
    """Drop the awaiting-approval tag from earlier messages"""
    return [
        m.model_copy(update={"action": None}) if m.action == MessageAction.AWAITING_PLAN_APPROVAL else m
        for m in messages
    ]


def format_console_errors(telemetry: List[ConsoleMessage]) -> str:
    errors = [m.model_dump(mode="json") for m in telemetry if m.is_error]
    return json.dumps(errors, indent=2, default=str)


def project_name_from_prompt(prompt: str) -> str:
    name = " ".join(prompt.split())[:PROJECT_NAME_LENGTH].strip()
    return name or DEFAULT_PROJECT_NAME


def apply_modification(snapshot: StateSnapshot, modification: Modification, correction: bool = False) -> StateSnapshot:
    """
    Derive the snapshot that results from applying a Modification.

    Files, preview artifacts, name and transcript change together.
    Preview artifacts are replaced only when the modification carries them.
    """
    if correction:
        replies = [Message(role=MessageRole.MODEL, content=SELF_CORRECTION_PREFIX + modification.reason)]
    else:
        replies = [
            Message(role=MessageRole.MODEL, content=modification.reason),
            Message(role=MessageRole.SYSTEM, content=GO_TO_PREVIEW_MESSAGE, action=MessageAction.GOTO_PREVIEW),
        ]

    return snapshot.append_messages(
        *replies,
        files=apply_changes(snapshot.files, modification.changes),
        preview_html=modification.preview_html if modification.preview_html is not None else snapshot.preview_html,
        standalone_html=(
            modification.standalone_html if modification.standalone_html is not None else snapshot.standalone_html
        ),
        project_name=modification.project_name or snapshot.project_name,
        has_generated_code=True,
        project_plan=None,
    )


class RunOrchestrator:
    """
    Per-project generation runs over a shared History Store.

    Different projects run concurrently and independently; a project
    refuses a second run until its current one is back to IDLE.
    """

    def __init__(
        self,
        history: Optional[HistoryStore] = None,
        gateway: Optional[OracleGateway] = None,
        telemetry: Optional[TelemetryRegistry] = None,
        monitor: Optional[ErrorFeedbackMonitor] = None,
        max_correction_attempts: Optional[int] = None,
    ):
        self.history = history or HistoryStore()
        self.gateway = gateway or OracleGateway()
        self.telemetry = telemetry or TelemetryRegistry()
        self.monitor = monitor or ErrorFeedbackMonitor()
        self.max_correction_attempts = (
            settings.MAX_CORRECTION_ATTEMPTS if max_correction_attempts is None else max_correction_attempts
        )
        self.run_states = RunStateManager()
        self._sessions: Dict[str, OracleSession] = {}

    # ==========================================
    # Projects
    # ==========================================

    def create_project(self, project_name: str = DEFAULT_PROJECT_NAME) -> Project:
        return self.history.create_project(project_name)

    def remove_project(self, project_id: str) -> None:
        """Cancel any run and forget every per-project resource"""
        self.cancel(project_id, notify=False)
        self.history.remove_project(project_id)
        self.run_states.remove(project_id)
        self.telemetry.remove_buffer(project_id)
        self._sessions.pop(project_id, None)

    def rename_project(self, project_id: str, project_name: str) -> StateSnapshot:
        project_name = project_name.strip() or DEFAULT_PROJECT_NAME
        return self.history.update(project_id, lambda s: s.evolve(project_name=project_name))

    def get_session(self, project_id: str) -> OracleSession:
        if project_id not in self._sessions:
            self._sessions[project_id] = OracleSession(project_id=project_id)
        return self._sessions[project_id]

    def get_run_state(self, project_id: str) -> RunState:
        return self.run_states.get_or_create(project_id)

    def telemetry_buffer(self, project_id: str) -> TelemetryBuffer:
        return self.telemetry.get_buffer(project_id)

    def status(self, project_id: str) -> Dict[str, Any]:
        """Everything a UI needs to render one project"""
        snapshot = self.history.current(project_id)
        project = self.history.get_project(project_id)
        return {
            "project_id": project_id,
            "project_name": snapshot.project_name,
            "version": project.history.current_index + 1,
            "versions": len(project.history.versions),
            "can_undo": project.history.can_undo,
            "can_redo": project.history.can_redo,
            "files": len(snapshot.files),
            "has_generated_code": snapshot.has_generated_code,
            "plan_pending": snapshot.project_plan is not None,
            "run": self.get_run_state(project_id).to_dict(),
            "telemetry": self.telemetry_buffer(project_id).to_dict(),
            "oracle": self.get_session(project_id).to_dict(),
        }

    # ==========================================
    # History navigation (idle projects only)
    # ==========================================

    def _require_idle(self, project_id: str) -> RunState:
        self.history.get_project(project_id)
        state = self.get_run_state(project_id)
        if not state.is_idle:
            raise RunInProgressError(project_id, state.phase.value)
        return state

    def undo(self, project_id: str) -> bool:
        self._require_idle(project_id)
        return self.history.undo(project_id)

    def redo(self, project_id: str) -> bool:
        self._require_idle(project_id)
        return self.history.redo(project_id)

    def restore_to(self, project_id: str, index: int) -> StateSnapshot:
        self._require_idle(project_id)
        return self.history.restore_to(project_id, index)

    # ==========================================
    # Transcript editing
    # ==========================================

    def delete_message(self, project_id: str, index: int) -> StateSnapshot:
        """Delete a message; deleting a user message also deletes the model reply right after it"""
        self._require_idle(project_id)

        def updater(current: StateSnapshot) -> StateSnapshot:
            messages = list(current.chat_messages)
            if not 0 <= index < len(messages):
                raise MessageNotFoundError(project_id, index, len(messages))
            end = index + 1
            if (messages[index].role == MessageRole.USER
                    and end < len(messages) and messages[end].role == MessageRole.MODEL):
                end += 1
            return current.evolve(chat_messages=messages[:index] + messages[end:])

        return self.history.update(project_id, updater)

    # ==========================================
    # Runs
    # ==========================================

    async def start_project(self, prompt: str, attachments: Optional[List[FileAttachment]] = None) -> RunResult:
        """Create a project named after the prompt and send the prompt as its first message"""
        project = self.create_project(project_name_from_prompt(prompt))
        return await self.send_message(project.id, prompt, attachments)

    async def approve_plan(self, project_id: str) -> RunResult:
        if self.history.current(project_id).project_plan is None:
            raise NoPendingPlanError(project_id)
        return await self.send_message(project_id, APPROVAL_MESSAGE)

    async def resubmit_message(
        self,
        project_id: str,
        index: int,
        text: str,
        attachments: Optional[List[FileAttachment]] = None,
    ) -> RunResult:
        """Replace the transcript from `index` on with an edited message and run it"""
        length = len(self.history.current(project_id).chat_messages)
        if not 0 <= index < length:
            raise MessageNotFoundError(project_id, index, length)
        return await self.send_message(project_id, text, attachments, truncate_at=index)

    async def send_message(
        self,
        project_id: str,
        text: str,
        attachments: Optional[List[FileAttachment]] = None,
        truncate_at: Optional[int] = None,
    ) -> RunResult:
        """
        Start a run for a user message and drive it to completion.

        Raises:
            RunInProgressError: the project is not IDLE
            ProjectNotFoundError: unknown project
        """
        state, phase = self._begin_run(project_id, text, attachments, truncate_at)
        return await self._execute(project_id, state, phase)

    def _begin_run(
        self,
        project_id: str,
        text: str,
        attachments: Optional[List[FileAttachment]],
        truncate_at: Optional[int],
    ):
        # Runs synchronously up to the first phase change so two callers cannot both start
        state = self._require_idle(project_id)
        current = self.history.current(project_id)
        if current.has_generated_code:
            phase, reason = RunPhase.BUILDING, "Modification request on existing code"
        elif current.project_plan is not None:
            phase, reason = RunPhase.BUILDING, "Plan approved, generating code"
        else:
            phase, reason = RunPhase.PLANNING, "New project, drafting a plan"

        user_message = Message(role=MessageRole.USER, content=text, attachments=attachments or None)

        def updater(snapshot: StateSnapshot) -> StateSnapshot:
            messages = snapshot.chat_messages if truncate_at is None else snapshot.chat_messages[:truncate_at]
            return snapshot.evolve(chat_messages=[*strip_approval_tags(messages), user_message])

        self.history.update(project_id, updater)

        state.token = CancellationToken()
        state.run_id = generate_run_id()
        state.correction_attempts = 0
        state.last_retry_count = 0
        state.start_timer()
        state.machine.transition(phase, reason=reason, metadata={"run_id": state.run_id})
        return state, phase

    async def _execute(self, project_id: str, state: RunState, phase: RunPhase) -> RunResult:
        run_id = state.run_id
        token = state.token
        set_project_id(project_id)
        set_run_id(run_id)
        session = self.get_session(project_id)

        try:
            result = await self._drive(project_id, state, phase, run_id, token, session)
        except GenerationCancelledError:
            logger.info(f"[RunOrchestrator] Run {run_id} cancelled")
            result = RunResult(project_id, RunStatus.CANCELLED, run_id, state.correction_attempts)
        except OracleError as e:
            if token.cancelled:
                result = RunResult(project_id, RunStatus.CANCELLED, run_id, state.correction_attempts)
            else:
                logger.error(
                    f"[RunOrchestrator] Run {run_id} failed: {e.code}",
                    extra={"event_type": "run_failed", "error_code": e.code, "attempts": e.attempts}
                )
                self._report_failure(project_id, state, run_id, self._failure_text(e))
                result = RunResult(project_id, RunStatus.FAILED, run_id, state.correction_attempts, error=e.code)
        except Exception as e:
            logger.log_error_with_context(e, "run_orchestrator", project_id=project_id)
            cause = str(e) or type(e).__name__
            self._report_failure(project_id, state, run_id, ERROR_MESSAGE.format(cause=cause[:MAX_CAUSE_LENGTH]))
            result = RunResult(project_id, RunStatus.FAILED, run_id, state.correction_attempts, error=cause)
        finally:
            if state.run_id == run_id:
                state.last_retry_count = session.last_retry_count
                if not state.is_idle:
                    state.machine.transition(RunPhase.IDLE, reason="Run ended", force=True)
                state.stop_timer()

        logger.info(
            f"[RunOrchestrator] Run {run_id} finished: {result.status.value}",
            extra={"event_type": "run_finished", "status": result.status.value,
                   "corrections": result.corrections, "elapsed_s": round(state.elapsed_seconds, 2)}
        )
        return result

    async def _drive(
        self,
        project_id: str,
        state: RunState,
        phase: RunPhase,
        run_id: str,
        token: CancellationToken,
        session: OracleSession,
    ) -> RunResult:
        correction_request: Optional[Message] = None

        while True:
            snapshot = self.history.current(project_id)
            transcript = list(snapshot.chat_messages)
            if phase == RunPhase.CORRECTING and correction_request is not None:
                transcript.append(correction_request)
            # File context only once code exists; first-time generation starts from the plan
            files = dict(snapshot.files) if snapshot.has_generated_code else None

            response = await self.gateway.ask(session, transcript, files=files, token=token)
            token.raise_if_cancelled()
            state.last_retry_count = session.last_retry_count

            if isinstance(response, ChatResponse):
                self._commit_messages(project_id, Message(role=MessageRole.MODEL, content=response.message))
                await self._transition(state, token, RunPhase.IDLE, "Oracle replied in chat")
                return RunResult(project_id, RunStatus.ANSWERED, run_id, state.correction_attempts)

            elif isinstance(response, PlanResponse):
                if phase == RunPhase.CORRECTING:
                    # A plan is no fix; surface it as the explanation and stop
                    self._commit_messages(project_id, Message(role=MessageRole.MODEL, content=response.plan.description))
                    await self._transition(state, token, RunPhase.IDLE, "Correction ended without code changes")
                    return RunResult(project_id, RunStatus.ANSWERED, run_id, state.correction_attempts)

                self._commit_plan(project_id, response.plan)
                await self._transition(state, token, RunPhase.AWAITING_APPROVAL, "Plan ready for review")
                await self._transition(state, token, RunPhase.IDLE, "Waiting for plan approval")
                return RunResult(project_id, RunStatus.AWAITING_APPROVAL, run_id, state.correction_attempts)

            elif isinstance(response, ModifyCodeResponse):
                self._commit_modification(project_id, response.modification, correction=phase == RunPhase.CORRECTING)
                phase = RunPhase.VERIFYING
                await self._transition(state, token, phase, "Modification applied, watching telemetry")

                verification = await self.monitor.watch(
                    self.telemetry_buffer(project_id),
                    token,
                    is_active=lambda: state.run_id == run_id and state.phase == RunPhase.VERIFYING,
                )
                token.raise_if_cancelled()
                if verification.outcome == VerificationOutcome.CANCELLED:
                    raise GenerationCancelledError("Run left verification")

                if verification.outcome == VerificationOutcome.CLEAN:
                    await self._transition(state, token, RunPhase.IDLE, "No runtime errors")
                    return RunResult(
                        project_id, RunStatus.SUCCEEDED, run_id, state.correction_attempts, verification=verification
                    )

                errors_json = format_console_errors(verification.telemetry)
                if state.correction_attempts >= self.max_correction_attempts:
                    self._commit_messages(project_id, Message(
                        role=MessageRole.MODEL,
                        content=UNRESOLVED_MESSAGE.format(attempts=state.correction_attempts, errors=errors_json),
                    ))
                    await self._transition(state, token, RunPhase.IDLE, "Correction budget exhausted")
                    return RunResult(
                        project_id, RunStatus.UNRESOLVED_ERRORS, run_id, state.correction_attempts,
                        verification=verification,
                    )

                state.correction_attempts += 1
                correction_request = Message(role=MessageRole.CORRECTION, content=CORRECTION_PREFIX + errors_json)
                phase = RunPhase.CORRECTING
                await self._transition(
                    state, token, phase,
                    f"{len(verification.errors)} runtime error(s), attempt "
                    f"{state.correction_attempts}/{self.max_correction_attempts}",
                )

            else:
                raise TypeError(f"Unhandled oracle response type: {type(response).__name__}")

    async def _transition(self, state: RunState, token: CancellationToken, phase: RunPhase, reason: str) -> None:
        moved = await state.machine.transition_async(phase, reason=reason)
        token.raise_if_cancelled()
        if not moved:
            raise BuildLoopError(
                f"Invalid run transition {state.phase.value} → {phase.value}",
                code="INVALID_TRANSITION",
                details={"project_id": state.project_id, "from": state.phase.value, "to": phase.value}
            )

    # ==========================================
    # Commits
    # ==========================================

    def _commit_messages(self, project_id: str, *messages: Message) -> StateSnapshot:
        return self.history.update(project_id, lambda s: s.append_messages(*messages))

    def _commit_plan(self, project_id: str, plan: Plan) -> StateSnapshot:
        message = Message(
            role=MessageRole.MODEL,
            content=PLAN_MESSAGE.format(name=plan.project_name),
            plan=plan,
            action=MessageAction.AWAITING_PLAN_APPROVAL,
        )
        return self.history.update(project_id, lambda s: s.append_messages(message, project_plan=plan))

    def _commit_modification(self, project_id: str, modification: Modification, correction: bool) -> StateSnapshot:
        snapshot = self.history.update(project_id, lambda s: apply_modification(s, modification, correction))
        # Stale errors belong to the previous generation
        self.telemetry_buffer(project_id).clear()
        logger.info(
            f"[RunOrchestrator] Applied {len(modification.changes)} change(s) to {project_id}",
            extra={"event_type": "modification_applied", "changes": len(modification.changes),
                   "files": len(snapshot.files), "correction": correction}
        )
        return snapshot

    def _report_failure(self, project_id: str, state: RunState, run_id: str, text: str) -> None:
        if state.run_id != run_id or (state.token is not None and state.token.cancelled):
            return
        self._commit_messages(project_id, Message(role=MessageRole.MODEL, content=text))

    @staticmethod
    def _failure_text(error: OracleError) -> str:
        if isinstance(error, QuotaExceededError):
            return QUOTA_MESSAGE
        if isinstance(error, TransientServerError):
            return TRANSIENT_MESSAGE
        cause = error.message
        if error.last_error_text:
            cause = f"{cause} ({error.last_error_text.splitlines()[0]})"
        return ERROR_MESSAGE.format(cause=cause[:MAX_CAUSE_LENGTH])

    # ==========================================
    # Cancellation
    # ==========================================

    def cancel(self, project_id: str, notify: bool = True) -> bool:
        """
        Cancel the project's active run. Idempotent: returns False when
        there is nothing to cancel.
        """
        state = self.run_states.get(project_id)
        if state is None or state.token is None or state.token.cancelled or state.phase not in ACTIVE_PHASES:
            return False

        state.token.cancel()
        if notify:
            self._commit_messages(project_id, Message(role=MessageRole.SYSTEM, content=CANCELLED_MESSAGE))
        state.machine.cancel()
        state.machine.transition(RunPhase.IDLE, reason="Run cancelled")
        state.stop_timer()
        logger.info(f"[RunOrchestrator] Cancelled run {state.run_id} for project {project_id}")
        return True
