# Pydantic schemas
from buildloop.schemas.project import (
    ChangeAction,
    Change,
    ConsoleLevel,
    ConsoleMessage,
    FileAttachment,
    History,
    Message,
    MessageAction,
    MessageRole,
    Modification,
    Plan,
    PlanFile,
    Project,
    StateSnapshot,
    Workspace,
)
from buildloop.schemas.oracle import (
    ChatResponse,
    ModifyCodeResponse,
    OracleResponse,
    PlanResponse,
)

__all__ = [
    # Project state
    "ChangeAction",
    "Change",
    "ConsoleLevel",
    "ConsoleMessage",
    "FileAttachment",
    "History",
    "Message",
    "MessageAction",
    "MessageRole",
    "Modification",
    "Plan",
    "PlanFile",
    "Project",
    "StateSnapshot",
    "Workspace",
    # Oracle responses
    "ChatResponse",
    "ModifyCodeResponse",
    "OracleResponse",
    "PlanResponse",
]
