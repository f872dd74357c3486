"""
History Store - per-project bounded version history.

Every committed change to a project (modification applied, message
appended, rename, restore) is a new immutable StateSnapshot. The store
owns the project registry and serializes all history mutation behind
one lock so concurrent runs on different projects never interleave a
half-finished commit.

Snapshots and projects cross the store boundary by deep copy only, in
both directions, so callers can never edit a stored version in place.
"""

import threading
import uuid
from typing import Callable, Dict, List, Optional

from buildloop.core.config import settings
from buildloop.core.exceptions import EmptyHistoryError, ProjectNotFoundError
from buildloop.core.logging_config import logger
from buildloop.schemas.project import (
    History,
    Message,
    MessageRole,
    Project,
    StateSnapshot,
    Workspace,
)

GREETING = "Hello! I'm BuildLoop. How can I help you build something amazing today?"
DEFAULT_PROJECT_NAME = "New Project"


def seed_snapshot(project_name: str = DEFAULT_PROJECT_NAME) -> StateSnapshot:
    """The single snapshot every new project starts with"""
    return StateSnapshot(
        files={},
        preview_html="",
        standalone_html="",
        chat_messages=[Message(role=MessageRole.MODEL, content=GREETING)],
        has_generated_code=False,
        project_name=project_name,
        project_plan=None,
    )


class HistoryStore:
    """Registry of projects and their histories"""

    def __init__(self, max_versions: Optional[int] = None):
        self.max_versions = max_versions or settings.HISTORY_MAX_VERSIONS
        self._projects: Dict[str, Project] = {}
        self._order: List[str] = []
        self._lock = threading.RLock()

    # ==========================================
    # Projects
    # ==========================================

    def create_project(self, project_name: str = DEFAULT_PROJECT_NAME, project_id: Optional[str] = None) -> Project:
        """Create a project with one seed snapshot"""
        project = Project(
            id=project_id or str(uuid.uuid4()),
            project_name=project_name,
            history=History(versions=[seed_snapshot(project_name)], current_index=0),
        )
        self.add_project(project)
        logger.info(f"[HistoryStore] Created project {project.id} ({project_name})")
        return project

    def add_project(self, project: Project) -> None:
        """Register a copy of an existing project (e.g. loaded from storage)"""
        if not project.history.versions:
            raise EmptyHistoryError(project.id)
        project = project.model_copy(deep=True)
        with self._lock:
            if project.id not in self._projects:
                self._order.append(project.id)
            self._projects[project.id] = project
            self._clamp_cursor(project)

    def remove_project(self, project_id: str) -> Project:
        with self._lock:
            project = self._projects.pop(project_id, None)
            if project is None:
                raise ProjectNotFoundError(project_id)
            self._order.remove(project_id)
        logger.info(f"[HistoryStore] Removed project {project_id}")
        return project

    def get_project(self, project_id: str) -> Project:
        """Detached copy of the project; edits to it never reach the store"""
        with self._lock:
            return self._project(project_id).model_copy(deep=True)

    def _project(self, project_id: str) -> Project:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                raise ProjectNotFoundError(project_id)
            return project

    def has_project(self, project_id: str) -> bool:
        with self._lock:
            return project_id in self._projects

    def list_projects(self) -> List[Project]:
        with self._lock:
            return [self._projects[pid].model_copy(deep=True) for pid in self._order]

    # ==========================================
    # History operations
    # ==========================================

    def current(self, project_id: str) -> StateSnapshot:
        """Snapshot at the cursor"""
        project = self._project(project_id)
        with self._lock:
            try:
                return project.history.current().model_copy(deep=True)
            except EmptyHistoryError:
                raise EmptyHistoryError(project_id)

    def commit(self, project_id: str, snapshot: StateSnapshot) -> int:
        """
        Commit a new snapshot.

        Drops any redo tail, appends, and trims the oldest versions past
        the cap. Returns the new cursor.
        """
        project = self._project(project_id)
        with self._lock:
            before = len(project.history.versions)
            index = project.history.commit(snapshot.model_copy(deep=True), self.max_versions)
            project.project_name = snapshot.project_name
        logger.debug(
            f"[HistoryStore] Commit {project_id}: version {index + 1}/{len(project.history.versions)}"
            + (" (trimmed)" if before >= self.max_versions else "")
        )
        return index

    def update(self, project_id: str, updater: Callable[[StateSnapshot], StateSnapshot]) -> StateSnapshot:
        """Read the current snapshot, derive a new one and commit it in one step"""
        project = self._project(project_id)
        with self._lock:
            snapshot = updater(project.history.current().model_copy(deep=True))
            project.history.commit(snapshot.model_copy(deep=True), self.max_versions)
            project.project_name = snapshot.project_name
        return snapshot

    def undo(self, project_id: str) -> bool:
        """Step the cursor back; no-op at the oldest version"""
        project = self._project(project_id)
        with self._lock:
            moved = project.history.undo()
            if moved:
                project.project_name = project.history.current().project_name
        if moved:
            logger.info(f"[HistoryStore] Undo {project_id} -> version {project.history.current_index + 1}")
        return moved

    def redo(self, project_id: str) -> bool:
        """Step the cursor forward; no-op at the newest version"""
        project = self._project(project_id)
        with self._lock:
            moved = project.history.redo()
            if moved:
                project.project_name = project.history.current().project_name
        if moved:
            logger.info(f"[HistoryStore] Redo {project_id} -> version {project.history.current_index + 1}")
        return moved

    def restore_to(self, project_id: str, index: int) -> StateSnapshot:
        """
        Move the cursor straight to `index`.

        Raises:
            OutOfRangeError: index is not a valid version
        """
        project = self._project(project_id)
        with self._lock:
            snapshot = project.history.restore_to(index)
            project.project_name = snapshot.project_name
        logger.info(f"[HistoryStore] Restored {project_id} to version {index + 1}")
        return snapshot.model_copy(deep=True)

    def can_undo(self, project_id: str) -> bool:
        return self._project(project_id).history.can_undo

    def can_redo(self, project_id: str) -> bool:
        return self._project(project_id).history.can_redo

    def versions(self, project_id: str) -> List[StateSnapshot]:
        project = self._project(project_id)
        with self._lock:
            return [snapshot.model_copy(deep=True) for snapshot in project.history.versions]

    def cursor(self, project_id: str) -> int:
        return self._project(project_id).history.current_index

    # ==========================================
    # Workspace
    # ==========================================

    def export_workspace(self, active_project_id: Optional[str] = None) -> Workspace:
        """Deep copy of every project, safe to serialize while runs continue"""
        with self._lock:
            projects = [self._projects[pid].model_copy(deep=True) for pid in self._order]
        return Workspace(projects=projects, active_project_id=active_project_id)

    def load_workspace(self, workspace: Workspace) -> None:
        """Replace the registry with the projects of `workspace`"""
        with self._lock:
            self._projects.clear()
            self._order.clear()
            for project in workspace.projects:
                if not project.history.versions:
                    logger.warning(f"[HistoryStore] Dropping project {project.id} with empty history")
                    continue
                self.add_project(project)
        logger.info(f"[HistoryStore] Loaded {len(self._order)} projects")

    def _clamp_cursor(self, project: Project) -> None:
        history = project.history
        last = len(history.versions) - 1
        if not 0 <= history.current_index <= last:
            logger.warning(
                f"[HistoryStore] Project {project.id} cursor {history.current_index} out of range, "
                f"clamping to {last}"
            )
            history.current_index = max(0, min(history.current_index, last))
