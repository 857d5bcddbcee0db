import json
import os
import stat

import pytest

from mcp_execution_engine.errors import InternalError
from mcp_execution_engine.workspace import STATE_FILE, WorkspaceManager


@pytest.fixture
def manager(tmp_path):
    return WorkspaceManager(tmp_path, idle_threshold=3600)


def test_create_allocates_private_directory(manager, tmp_path):
    workspace = manager.create("print('hi')", "py")
    assert workspace.id.startswith("ws-")
    assert workspace.status == "pending"
    assert os.path.isdir(workspace.path)
    assert os.path.dirname(workspace.path) == str(tmp_path.resolve() / "workspaces")
    assert stat.S_IMODE(os.stat(workspace.path).st_mode) == 0o755
    assert manager.get(workspace.id) is workspace


def test_ids_are_unique(manager):
    ids = {manager.create("", "py").id for _ in range(20)}
    assert len(ids) == 20


def test_lifecycle_transitions(manager):
    workspace = manager.create("", "py")
    manager.start(workspace.id)
    assert workspace.status == "running"
    manager.complete(workspace.id, {"ok": True})
    assert workspace.status == "completed"
    assert workspace.result == {"ok": True}
    assert workspace.finished_at is not None

    with pytest.raises(InternalError):
        manager.start(workspace.id)
    # failing a finished workspace keeps its outcome
    assert manager.fail(workspace.id).status == "completed"


def test_pending_can_fail_directly(manager):
    workspace = manager.create("", "ts")
    manager.fail(workspace.id, {"error": "boom"})
    assert workspace.status == "failed"
    with pytest.raises(InternalError):
        manager.complete(workspace.id)
    with pytest.raises(InternalError):
        manager.start("ws-missing")


def test_cleanup_only_removes_idle_terminal_workspaces(manager):
    idle = manager.create("", "py")
    manager.start(idle.id)
    manager.complete(idle.id)
    idle.last_accessed_at -= 7200

    recent = manager.create("", "py")
    manager.start(recent.id)
    manager.fail(recent.id)

    running = manager.create("", "py")
    manager.start(running.id)
    running.last_accessed_at -= 7200

    assert manager.cleanup() == 1
    assert manager.get(idle.id) is None
    assert not os.path.exists(idle.path)
    assert manager.get(recent.id) is not None
    assert manager.get(running.id) is not None

    assert manager.force_cleanup() == 1
    assert manager.get(recent.id) is None
    assert manager.get(running.id) is not None
    assert manager.stats() == {
        "total": 1,
        "byStatus": {"pending": 0, "running": 1, "completed": 0, "failed": 0},
        "removed": 2,
    }


def test_touch_defers_cleanup(manager):
    workspace = manager.create("", "py")
    manager.fail(workspace.id)
    workspace.last_accessed_at -= 7200
    manager.touch(workspace.id)
    assert manager.cleanup() == 0


def test_state_file_is_persisted(manager, tmp_path):
    workspace = manager.create("code", "py")
    manager.start(workspace.id)
    state = json.loads((tmp_path / STATE_FILE).read_text())
    assert [item["id"] for item in state["workspaces"]] == [workspace.id]
    assert state["workspaces"][0]["status"] == "running"
    assert "code" not in state["workspaces"][0]
