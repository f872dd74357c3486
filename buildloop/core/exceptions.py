"""
Custom Exceptions for BuildLoop
===============================

Use these instead of generic Exception to:
1. Let the orchestrator tell cancellation apart from real failures
2. Classify oracle failures into user-facing guidance
3. Keep history misuse distinguishable from corrupted projects

Usage:
    from buildloop.core.exceptions import GenerationCancelledError, OracleError

    try:
        response = await gateway.ask(session, transcript, token=token)
    except GenerationCancelledError:
        ...
    except OracleError as e:
        logger.error(f"Oracle failed ({e.kind}): {e.last_error_text}")
"""

from enum import Enum
from typing import Optional, Any, Dict


class BuildLoopError(Exception):
    """Base exception for all BuildLoop errors"""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Cancellation
# ============================================

class GenerationCancelledError(BuildLoopError):
    """The user cancelled the in-flight generation"""

    def __init__(self, reason: str = "Cancelled by user"):
        super().__init__(reason, code="GENERATION_CANCELLED")


# ============================================
# Oracle Errors
# ============================================

class MalformedResponseError(BuildLoopError):
    """Oracle output could not be decoded into a structured response"""

    SNIPPET_LENGTH = 200

    def __init__(self, message: str, raw_text: str = ""):
        snippet = (raw_text or "")[:self.SNIPPET_LENGTH]
        super().__init__(message, code="MALFORMED_RESPONSE", details={"snippet": snippet})
        self.snippet = snippet


class OracleFailureKind(str, Enum):
    """Classification of a failed oracle call after retries are exhausted"""
    QUOTA = "quota"
    TRANSIENT_SERVER = "transient_server"
    DECODE_FAILURE = "decode_failure"
    UNKNOWN = "unknown"


class OracleError(BuildLoopError):
    """Oracle call failed after the gateway's retry budget"""

    kind: OracleFailureKind = OracleFailureKind.UNKNOWN
    default_code = "ORACLE_ERROR"

    def __init__(self, message: str, last_error_text: str = "", attempts: int = 0):
        super().__init__(
            message,
            code=self.default_code,
            details={
                "kind": self.kind.value,
                "last_error": last_error_text[:1000],
                "attempts": attempts,
            }
        )
        self.last_error_text = last_error_text
        self.attempts = attempts


class QuotaExceededError(OracleError):
    """Oracle quota or rate limit exceeded"""

    kind = OracleFailureKind.QUOTA
    default_code = "ORACLE_QUOTA_EXCEEDED"


class TransientServerError(OracleError):
    """Oracle server overloaded, unavailable or unreachable"""

    kind = OracleFailureKind.TRANSIENT_SERVER
    default_code = "ORACLE_TRANSIENT_SERVER"


class ResponseDecodeError(OracleError):
    """Oracle kept returning output that could not be decoded"""

    kind = OracleFailureKind.DECODE_FAILURE
    default_code = "ORACLE_DECODE_FAILURE"


class UnknownOracleError(OracleError):
    """Oracle failed for an unclassified reason"""

    kind = OracleFailureKind.UNKNOWN
    default_code = "ORACLE_UNKNOWN"


ORACLE_ERRORS_BY_KIND = {
    OracleFailureKind.QUOTA: QuotaExceededError,
    OracleFailureKind.TRANSIENT_SERVER: TransientServerError,
    OracleFailureKind.DECODE_FAILURE: ResponseDecodeError,
    OracleFailureKind.UNKNOWN: UnknownOracleError,
}


# ============================================
# History Errors
# ============================================

class HistoryError(BuildLoopError):
    """Version history misuse or corruption"""

    def __init__(self, message: str, code: str = "HISTORY_ERROR", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class OutOfRangeError(HistoryError):
    """Requested version index does not exist"""

    def __init__(self, index: int, length: int):
        super().__init__(
            f"Version index {index} out of range (history has {length} versions)",
            code="HISTORY_OUT_OF_RANGE",
            details={"index": index, "length": length}
        )


class EmptyHistoryError(HistoryError):
    """History has no snapshots - the project is corrupted"""

    def __init__(self, project_id: str = ""):
        super().__init__(
            f"Project '{project_id}' has an empty history",
            code="HISTORY_EMPTY",
            details={"project_id": project_id}
        )


# ============================================
# Project / Run Errors
# ============================================

class ProjectNotFoundError(BuildLoopError):
    """Project not found"""

    def __init__(self, project_id: str):
        super().__init__(
            f"Project with ID '{project_id}' not found",
            code="PROJECT_NOT_FOUND",
            details={"project_id": project_id}
        )


class RunInProgressError(BuildLoopError):
    """A run is already active for this project"""

    def __init__(self, project_id: str, phase: str):
        super().__init__(
            f"Project '{project_id}' is busy ({phase}); wait for it to finish or cancel it",
            code="RUN_IN_PROGRESS",
            details={"project_id": project_id, "phase": phase}
        )


class MessageNotFoundError(BuildLoopError):
    """Transcript has no message at the requested index"""

    def __init__(self, project_id: str, index: int, length: int):
        super().__init__(
            f"Message index {index} out of range (transcript has {length} messages)",
            code="MESSAGE_NOT_FOUND",
            details={"project_id": project_id, "index": index, "length": length}
        )


class NoPendingPlanError(BuildLoopError):
    """Approval requested but no plan is waiting for it"""

    def __init__(self, project_id: str):
        super().__init__(
            f"Project '{project_id}' has no plan awaiting approval",
            code="NO_PENDING_PLAN",
            details={"project_id": project_id}
        )


# ============================================
# Helper function for API responses
# ============================================

def error_response(error: BuildLoopError) -> Dict[str, Any]:
    """Convert exception to error response format"""
    return {
        "success": False,
        "error": error.to_dict()
    }
