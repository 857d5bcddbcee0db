"""Per-execution working directories and their lifecycle."""

from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import time
from pathlib import Path
from typing import Dict, List, Optional

from .errors import InternalError
from .models import WORKSPACE_STATUSES, Workspace

logger = logging.getLogger(__name__)

STATE_FILE = ".mcp-state.json"
TERMINAL_STATUSES = frozenset({"completed", "failed"})
_TRANSITIONS = {
    "pending": {"running", "failed"},
    "running": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}


def new_workspace_id() -> str:
    return f"ws-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class WorkspaceManager:
    """Allocate workspaces under ``base_dir`` and track their status."""

    def __init__(self, base_dir: Path, *, idle_threshold: float = 24 * 3600) -> None:
        self.base_dir = Path(base_dir).expanduser().resolve()
        self.root = self.base_dir / "workspaces"
        self.idle_threshold = idle_threshold
        self._workspaces: Dict[str, Workspace] = {}
        self._removed_total = 0

    def create(self, code: str, dialect: str) -> Workspace:
        self.root.mkdir(parents=True, exist_ok=True)
        workspace_id = new_workspace_id()
        while workspace_id in self._workspaces:
            workspace_id = new_workspace_id()
        path = self.root / workspace_id
        try:
            path.mkdir(mode=0o755)
        except OSError as exc:
            raise InternalError(f"Failed to create workspace {workspace_id}: {exc}") from exc
        os.chmod(path, 0o755)
        now = time.time()
        workspace = Workspace(
            id=workspace_id,
            path=str(path),
            created_at=now,
            last_accessed_at=now,
            code=code,
            dialect=dialect,
        )
        self._workspaces[workspace_id] = workspace
        self._persist()
        return workspace

    def get(self, workspace_id: str) -> Optional[Workspace]:
        return self._workspaces.get(workspace_id)

    def touch(self, workspace_id: str) -> None:
        workspace = self._workspaces.get(workspace_id)
        if workspace is not None:
            workspace.last_accessed_at = time.time()

    def list(self) -> List[Workspace]:
        return sorted(self._workspaces.values(), key=lambda ws: ws.created_at)

    def _transition(self, workspace_id: str, status: str, result: Optional[Dict[str, object]] = None) -> Workspace:
        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            raise InternalError(f"Unknown workspace {workspace_id}")
        if status not in _TRANSITIONS[workspace.status]:
            raise InternalError(f"Workspace {workspace_id} cannot move from {workspace.status} to {status}")
        now = time.time()
        workspace.status = status
        workspace.last_accessed_at = now
        if status in TERMINAL_STATUSES:
            workspace.finished_at = now
            workspace.result = result
        self._persist()
        return workspace

    def start(self, workspace_id: str) -> Workspace:
        return self._transition(workspace_id, "running")

    def complete(self, workspace_id: str, result: Optional[Dict[str, object]] = None) -> Workspace:
        return self._transition(workspace_id, "completed", result)

    def fail(self, workspace_id: str, result: Optional[Dict[str, object]] = None) -> Workspace:
        """Mark a workspace failed; a no-op if it already reached a terminal state."""

        workspace = self._workspaces.get(workspace_id)
        if workspace is not None and workspace.status in TERMINAL_STATUSES:
            return workspace
        return self._transition(workspace_id, "failed", result)

    def _remove(self, workspace: Workspace) -> bool:
        try:
            shutil.rmtree(workspace.path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove workspace %s", workspace.id, exc_info=True)
            return False
        self._workspaces.pop(workspace.id, None)
        self._removed_total += 1
        return True

    def cleanup(self, idle_threshold: Optional[float] = None) -> int:
        """Remove terminal workspaces idle longer than the threshold."""

        threshold = self.idle_threshold if idle_threshold is None else idle_threshold
        now = time.time()
        removed = 0
        for workspace in list(self._workspaces.values()):
            if workspace.status not in TERMINAL_STATUSES:
                continue
            if now - workspace.last_accessed_at < threshold:
                continue
            if self._remove(workspace):
                removed += 1
        if removed:
            logger.info("Removed %d idle workspace(s)", removed)
            self._persist()
        return removed

    def force_cleanup(self) -> int:
        return self.cleanup(idle_threshold=0)

    def stats(self) -> Dict[str, object]:
        by_status = {status: 0 for status in WORKSPACE_STATUSES}
        for workspace in self._workspaces.values():
            by_status[workspace.status] += 1
        return {"total": len(self._workspaces), "byStatus": by_status, "removed": self._removed_total}

    def _persist(self) -> None:
        state = {
            "updatedAt": time.time(),
            "workspaces": [workspace.to_dict() for workspace in self.list()],
        }
        target = self.base_dir / STATE_FILE
        tmp = target.with_suffix(".tmp")
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(state, separators=(",", ":"), default=str))
            os.replace(tmp, target)
        except OSError:
            logger.debug("Failed to persist workspace state", exc_info=True)
