"""
Workspace Storage

Saves and loads the whole Workspace (all projects with their histories
and the active project id) as one JSON document. Saves are atomic: the
document is written to a temporary sibling and then renamed over the
target, so a crash never leaves a half-written workspace.

Run state is ephemeral and never written here.
"""

import os
import uuid
from pathlib import Path
from typing import Optional, Union

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from buildloop.core.config import settings
from buildloop.core.exceptions import BuildLoopError
from buildloop.core.logging_config import logger
from buildloop.schemas.project import Workspace


class WorkspaceStorageError(BuildLoopError):
    """Workspace file exists but cannot be read back"""

    def __init__(self, path: str, reason: str):
        super().__init__(
            f"Cannot load workspace from {path}: {reason}",
            code="WORKSPACE_CORRUPTED",
            details={"path": path}
        )


class WorkspaceStorage:
    """JSON file persistence for a Workspace"""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path or settings.WORKSPACE_FILE)

    async def save(self, workspace: Workspace) -> Path:
        """Write the workspace atomically (temp file + rename)"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex[:8]}.tmp")

        document = workspace.model_dump_json(by_alias=True, indent=2)
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(document)
                await f.flush()
            await aiofiles.os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                await aiofiles.os.remove(tmp_path)
            raise

        logger.debug(
            f"[WorkspaceStorage] Saved {len(workspace.projects)} projects to {self.path} "
            f"({len(document)} chars)"
        )
        return self.path

    async def load(self) -> Workspace:
        """
        Load the workspace. A missing file yields an empty Workspace.

        Raises:
            WorkspaceStorageError: the file exists but is not a valid workspace
        """
        if not self.path.exists():
            logger.info(f"[WorkspaceStorage] No workspace at {self.path}, starting empty")
            return Workspace()

        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            document = await f.read()

        try:
            workspace = Workspace.model_validate_json(document)
        except ValidationError as e:
            raise WorkspaceStorageError(str(self.path), f"{e.error_count()} validation errors") from e

        logger.info(f"[WorkspaceStorage] Loaded {len(workspace.projects)} projects from {self.path}")
        return workspace

    async def exists(self) -> bool:
        return await aiofiles.os.path.exists(self.path)
