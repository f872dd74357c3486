"""
Error-Feedback Monitor

Watches a project's telemetry buffer while its run is verifying and
decides between "clean" and "erroring" as soon as the telemetry allows:

- first error-level entry: hand the whole buffer over and clear it
- any entry but no errors: clean, without waiting out the timeout
- timeout with an empty buffer: clean (silent apps are assumed healthy)

The wait is a race between buffer activity, the timer and the run's
cancellation token.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from buildloop.core.config import settings
from buildloop.core.exceptions import GenerationCancelledError
from buildloop.core.logging_config import logger
from buildloop.core.cancellation import CancellationToken
from buildloop.schemas.project import ConsoleMessage
from buildloop.services.telemetry_bus import TelemetryBuffer


class VerificationOutcome(str, Enum):
    CLEAN = "clean"
    ERRORING = "erroring"
    CANCELLED = "cancelled"


@dataclass
class VerificationResult:
    outcome: VerificationOutcome
    # Full buffer contents when erroring (errors and surrounding logs)
    telemetry: List[ConsoleMessage] = field(default_factory=list)
    timed_out: bool = False
    waited_ms: float = 0.0

    @property
    def errors(self) -> List[ConsoleMessage]:
        return [m for m in self.telemetry if m.is_error]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "errors": len(self.errors),
            "telemetry": len(self.telemetry),
            "timed_out": self.timed_out,
            "waited_ms": round(self.waited_ms, 1),
        }


class ErrorFeedbackMonitor:
    """Classifies post-generation telemetry as clean or erroring"""

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = settings.verify_timeout_seconds if timeout_seconds is None else timeout_seconds

    async def watch(
        self,
        buffer: TelemetryBuffer,
        token: Optional[CancellationToken] = None,
        is_active: Optional[Callable[[], bool]] = None,
    ) -> VerificationResult:
        """
        Wait for a verdict on the project's telemetry.

        Args:
            buffer: The project's telemetry buffer, cleared at the last commit
            token: The run's cancellation token
            is_active: Returns False once the project has left the verifying phase

        Returns:
            VerificationResult - CANCELLED if the token fired or the run moved on
        """
        token = token or CancellationToken()
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.timeout_seconds

        def result(outcome: VerificationOutcome, telemetry=None, timed_out: bool = False) -> VerificationResult:
            return VerificationResult(
                outcome=outcome,
                telemetry=telemetry or [],
                timed_out=timed_out,
                waited_ms=(loop.time() - started) * 1000,
            )

        while True:
            if token.cancelled or (is_active is not None and not is_active()):
                return result(VerificationOutcome.CANCELLED)

            buffer.reset_activity()
            if buffer.has_errors:
                telemetry = buffer.drain()
                logger.info(
                    f"[ErrorFeedbackMonitor:{buffer.project_id}] Runtime errors detected "
                    f"({sum(1 for m in telemetry if m.is_error)} errors, {len(telemetry)} entries)"
                )
                return result(VerificationOutcome.ERRORING, telemetry)
            if len(buffer) > 0:
                logger.debug(f"[ErrorFeedbackMonitor:{buffer.project_id}] Telemetry without errors, clean")
                return result(VerificationOutcome.CLEAN)

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.debug(f"[ErrorFeedbackMonitor:{buffer.project_id}] No telemetry within timeout, clean")
                return result(VerificationOutcome.CLEAN, timed_out=True)

            try:
                await token.guard(asyncio.wait_for(buffer.wait_for_activity(), timeout=remaining))
            except asyncio.TimeoutError:
                continue
            except GenerationCancelledError:
                return result(VerificationOutcome.CANCELLED)
