from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from buildloop.core.exceptions import EmptyHistoryError, OutOfRangeError


class WireModel(BaseModel):
    """Base for persisted/wire models: camelCase on the wire, snake_case in Python"""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class MessageRole(str, Enum):
    USER = "user"
    MODEL = "model"
    SYSTEM = "system"
    CORRECTION = "correction"


class MessageAction(str, Enum):
    GOTO_PREVIEW = "GOTO_PREVIEW"
    AWAITING_PLAN_APPROVAL = "AWAITING_PLAN_APPROVAL"


class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConsoleLevel(str, Enum):
    LOG = "log"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    DEBUG = "debug"


class FileAttachment(WireModel):
    name: str
    type: str  # MIME type
    content: str  # base64 encoded


class PlanFile(WireModel):
    path: str
    purpose: str = ""


class Plan(WireModel):
    project_name: str
    description: str
    features: List[str]
    file_structure: List[PlanFile]
    tech_stack: List[str]
    backend_requirements: Optional[List[str]] = None
    frontend_requirements: Optional[List[str]] = None
    standalone_requirements: Optional[List[str]] = None


class Message(WireModel):
    role: MessageRole
    content: str
    attachments: Optional[List[FileAttachment]] = None
    plan: Optional[Plan] = None
    action: Optional[MessageAction] = None
    # UI-only reveal marker; orchestration ignores it
    streaming: bool = False


class Change(WireModel):
    file_path: str
    action: ChangeAction
    content: Optional[str] = None


class Modification(WireModel):
    project_name: Optional[str] = None
    reason: str
    changes: List[Change]
    preview_html: Optional[str] = None
    standalone_html: Optional[str] = None


class ConsoleMessage(WireModel):
    level: ConsoleLevel
    payload: List[Any] = Field(default_factory=list)

    @property
    def is_error(self) -> bool:
        return self.level == ConsoleLevel.ERROR


class StateSnapshot(WireModel):
    """One immutable, fully consistent state of a project"""

    files: Dict[str, str] = Field(default_factory=dict)
    preview_html: str = ""
    standalone_html: str = ""
    chat_messages: List[Message] = Field(default_factory=list)
    has_generated_code: bool = False
    project_name: str = "New Project"
    project_plan: Optional[Plan] = None

    def evolve(self, **changes: Any) -> "StateSnapshot":
        """Return a new snapshot with `changes` applied; containers are copied, never shared"""
        data = {
            "files": dict(self.files),
            "preview_html": self.preview_html,
            "standalone_html": self.standalone_html,
            "chat_messages": list(self.chat_messages),
            "has_generated_code": self.has_generated_code,
            "project_name": self.project_name,
            "project_plan": self.project_plan,
        }
        for key, value in changes.items():
            if key not in data:
                raise TypeError(f"Unknown snapshot field: {key}")
            if isinstance(value, dict):
                value = dict(value)
            elif isinstance(value, list):
                value = list(value)
            data[key] = value
        return StateSnapshot(**data)

    def append_messages(self, *messages: Message, **changes: Any) -> "StateSnapshot":
        return self.evolve(chat_messages=[*self.chat_messages, *messages], **changes)


class History(BaseModel):
    """
    Ordered snapshots plus a cursor, with linear undo/redo.

    The cursor always indexes a snapshot. Committing after an undo drops
    the redoable tail; exceeding `max_versions` drops the oldest entries.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    versions: List[StateSnapshot] = Field(default_factory=list)
    current_index: int = 0

    @property
    def can_undo(self) -> bool:
        return self.current_index > 0

    @property
    def can_redo(self) -> bool:
        return self.current_index < len(self.versions) - 1

    def current(self) -> StateSnapshot:
        if not self.versions or not 0 <= self.current_index < len(self.versions):
            raise EmptyHistoryError()
        return self.versions[self.current_index]

    def commit(self, snapshot: StateSnapshot, max_versions: int) -> int:
        """Append after the cursor, truncating any redo tail. Returns the new cursor."""
        versions = self.versions[:self.current_index + 1] if self.versions else []
        versions.append(snapshot)
        overflow = len(versions) - max_versions
        if overflow > 0:
            versions = versions[overflow:]
        self.versions = versions
        self.current_index = len(versions) - 1
        return self.current_index

    def undo(self) -> bool:
        if not self.can_undo:
            return False
        self.current_index -= 1
        return True

    def redo(self) -> bool:
        if not self.can_redo:
            return False
        self.current_index += 1
        return True

    def restore_to(self, index: int) -> StateSnapshot:
        if not 0 <= index < len(self.versions):
            raise OutOfRangeError(index, len(self.versions))
        self.current_index = index
        return self.versions[index]


class Project(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    project_name: str
    history: History


class Workspace(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    projects: List[Project] = Field(default_factory=list)
    active_project_id: Optional[str] = None
