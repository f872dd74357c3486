"""
Unit Tests for History Store
Tests for: seeding, commits, version cap, undo/redo, restore, workspace export/import
"""
import pytest

from buildloop.core.exceptions import EmptyHistoryError, OutOfRangeError, ProjectNotFoundError
from buildloop.schemas.project import History, Message, MessageRole, Project, StateSnapshot, Workspace
from buildloop.services.history_store import GREETING, HistoryStore, seed_snapshot


def numbered(n: int) -> StateSnapshot:
    return seed_snapshot().evolve(files={"version.txt": str(n)})


class TestSeed:
    """Test new projects"""

    def test_seed_snapshot(self):
        """Test the seed has only the greeting"""
        snapshot = seed_snapshot("Demo")
        assert snapshot.files == {}
        assert snapshot.has_generated_code is False
        assert snapshot.project_plan is None
        assert snapshot.project_name == "Demo"
        assert len(snapshot.chat_messages) == 1
        assert snapshot.chat_messages[0].role == MessageRole.MODEL
        assert snapshot.chat_messages[0].content == GREETING

    def test_create_project(self, history_store):
        """Test a new project has one version at cursor 0"""
        project = history_store.create_project("Demo")

        assert history_store.has_project(project.id)
        assert history_store.cursor(project.id) == 0
        assert len(history_store.versions(project.id)) == 1
        assert history_store.can_undo(project.id) is False
        assert history_store.can_redo(project.id) is False

    def test_unknown_project(self, history_store):
        """Test lookups of missing projects fail"""
        with pytest.raises(ProjectNotFoundError):
            history_store.current("missing")


class TestCommit:
    """Test committing snapshots"""

    def test_commit_advances_cursor(self, history_store):
        """Test each commit becomes the current version"""
        project = history_store.create_project()
        assert history_store.commit(project.id, numbered(1)) == 1
        assert history_store.current(project.id).files == {"version.txt": "1"}

    def test_version_cap(self):
        """Test the oldest versions are dropped past the cap"""
        store = HistoryStore(max_versions=20)
        project = store.create_project()
        for n in range(1, 25):
            store.commit(project.id, numbered(n))

        versions = store.versions(project.id)
        assert len(versions) == 20
        assert store.cursor(project.id) == 19
        assert versions[0].files == {"version.txt": "5"}
        assert versions[-1].files == {"version.txt": "24"}

    def test_commit_after_undo_drops_redo(self, history_store):
        """Test committing after undo discards the redoable tail"""
        project = history_store.create_project()
        history_store.commit(project.id, numbered(1))
        history_store.commit(project.id, numbered(2))
        history_store.undo(project.id)
        history_store.undo(project.id)

        history_store.commit(project.id, numbered(3))

        versions = history_store.versions(project.id)
        assert len(versions) == 2
        assert versions[-1].files == {"version.txt": "3"}
        assert history_store.can_redo(project.id) is False

    def test_update_commits_derived_snapshot(self, history_store):
        """Test update reads, derives and commits in one step"""
        project = history_store.create_project()
        message = Message(role=MessageRole.USER, content="hi")

        snapshot = history_store.update(project.id, lambda s: s.append_messages(message, project_name="Chat"))

        assert history_store.current(project.id) == snapshot
        assert history_store.get_project(project.id).project_name == "Chat"
        assert len(history_store.versions(project.id)) == 2

    def test_snapshots_not_shared(self, history_store):
        """Test older versions are unaffected by later commits"""
        project = history_store.create_project()
        history_store.update(project.id, lambda s: s.evolve(files={"a.js": "1"}))
        history_store.update(project.id, lambda s: s.evolve(files={**s.files, "b.js": "2"}))

        first, second, third = history_store.versions(project.id)
        assert first.files == {}
        assert second.files == {"a.js": "1"}
        assert third.files == {"a.js": "1", "b.js": "2"}


class TestNavigation:
    """Test undo, redo and restore"""

    @pytest.fixture
    def project_id(self, history_store):
        project = history_store.create_project()
        for n in range(1, 4):
            history_store.commit(project.id, numbered(n))
        return project.id

    def test_undo_redo(self, history_store, project_id):
        """Test undo and redo move one step"""
        assert history_store.undo(project_id) is True
        assert history_store.current(project_id).files == {"version.txt": "2"}
        assert history_store.redo(project_id) is True
        assert history_store.current(project_id).files == {"version.txt": "3"}

    def test_redo_at_end_is_noop(self, history_store, project_id):
        """Test redo at the newest version does nothing"""
        assert history_store.redo(project_id) is False
        assert history_store.cursor(project_id) == 3

    def test_undo_at_start_is_noop(self, history_store, project_id):
        """Test undo at the oldest version does nothing"""
        history_store.restore_to(project_id, 0)
        assert history_store.undo(project_id) is False
        assert history_store.cursor(project_id) == 0

    def test_restore_keeps_versions(self, history_store, project_id):
        """Test restore only moves the cursor"""
        snapshot = history_store.restore_to(project_id, 1)
        assert snapshot.files == {"version.txt": "1"}
        assert len(history_store.versions(project_id)) == 4
        assert history_store.can_redo(project_id)

    @pytest.mark.parametrize("index", [-1, 4, 100])
    def test_restore_out_of_range(self, history_store, project_id, index):
        """Test restore rejects invalid indices and leaves the cursor alone"""
        with pytest.raises(OutOfRangeError):
            history_store.restore_to(project_id, index)
        assert history_store.cursor(project_id) == 3


class TestHistoryModel:
    """Test the History model directly"""

    def test_empty_history_current(self):
        """Test an empty history has no current snapshot"""
        with pytest.raises(EmptyHistoryError):
            History().current()

    def test_add_project_with_empty_history(self, history_store):
        """Test projects without versions are refused"""
        with pytest.raises(EmptyHistoryError):
            history_store.add_project(Project(id="p", project_name="Broken", history=History()))


class TestWorkspace:
    """Test exporting and loading workspaces"""

    def test_export_is_deep_copy(self, history_store):
        """Test later commits do not leak into an export"""
        project = history_store.create_project("Demo")
        workspace = history_store.export_workspace(project.id)
        history_store.commit(project.id, numbered(1))

        assert workspace.active_project_id == project.id
        assert len(workspace.projects[0].history.versions) == 1

    def test_load_replaces_projects(self, history_store):
        """Test loading drops existing projects and keeps order"""
        history_store.create_project("Old")
        workspace = Workspace(projects=[
            Project(id="a", project_name="A", history=History(versions=[seed_snapshot("A")])),
            Project(id="b", project_name="B", history=History(versions=[seed_snapshot("B")])),
        ])

        history_store.load_workspace(workspace)

        assert [p.id for p in history_store.list_projects()] == ["a", "b"]

    def test_load_clamps_cursor_and_skips_empty(self, history_store):
        """Test a bad cursor is clamped and empty projects are dropped"""
        workspace = Workspace(projects=[
            Project(id="a", project_name="A", history=History(versions=[seed_snapshot(), numbered(1)], current_index=7)),
            Project(id="empty", project_name="E", history=History()),
        ])

        history_store.load_workspace(workspace)

        assert history_store.cursor("a") == 1
        assert history_store.has_project("empty") is False

    def test_remove_project(self, history_store):
        """Test removal forgets the project"""
        project = history_store.create_project()
        history_store.remove_project(project.id)
        assert history_store.list_projects() == []
        with pytest.raises(ProjectNotFoundError):
            history_store.remove_project(project.id)


class TestValueSemantics:
    """Test stored versions cannot be edited from outside the store"""

    def test_current_returns_copy(self, history_store):
        """Test editing the current snapshot's containers leaves the store untouched"""
        project = history_store.create_project()

        snapshot = history_store.current(project.id)
        snapshot.files["evil.js"] = "x"
        snapshot.chat_messages.append(Message(role=MessageRole.USER, content="injected"))

        current = history_store.current(project.id)
        assert current.files == {}
        assert len(current.chat_messages) == 1

    def test_versions_and_restore_return_copies(self, history_store):
        """Test listed and restored versions are detached"""
        project = history_store.create_project()
        history_store.commit(project.id, numbered(1))

        history_store.versions(project.id)[0].files["evil.js"] = "x"
        history_store.restore_to(project.id, 1).files["evil.js"] = "x"

        assert history_store.versions(project.id)[0].files == {}
        assert history_store.current(project.id).files == {"version.txt": "1"}

    def test_committed_snapshot_detached(self, history_store):
        """Test the caller's snapshot is not the stored one"""
        project = history_store.create_project()
        snapshot = numbered(1)
        history_store.commit(project.id, snapshot)

        snapshot.files["version.txt"] = "changed"

        assert history_store.current(project.id).files == {"version.txt": "1"}

    def test_updater_cannot_edit_in_place(self, history_store):
        """Test an updater mutating its input does not rewrite the previous version"""
        project = history_store.create_project()

        def sneaky(snapshot):
            snapshot.files["evil.js"] = "x"
            return snapshot.evolve(project_name="Renamed")

        history_store.update(project.id, sneaky)

        assert history_store.versions(project.id)[0].files == {}

    def test_project_copies(self, history_store):
        """Test returned projects and loaded workspaces are detached"""
        project = history_store.create_project("Demo")
        history_store.get_project(project.id).history.versions.clear()
        history_store.list_projects()[0].history.versions.clear()
        project.history.versions.clear()

        assert len(history_store.versions(project.id)) == 1
        assert history_store.get_project(project.id).project_name == "Demo"
