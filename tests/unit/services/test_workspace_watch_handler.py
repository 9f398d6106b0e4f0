"""Tests for the watchdog adapter."""

from unittest.mock import MagicMock, call

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from qgrep_indexer.services.index_orchestrator import (
    CHANGE_CREATED,
    CHANGE_DELETED,
    CHANGE_MODIFIED,
)
from qgrep_indexer.services.workspace_watch_handler import WorkspaceWatchHandler

from tests.shared.async_helpers import wait_until


@pytest.fixture
def service():
    return MagicMock()


class TestWorkspaceWatchHandler:
    def test_file_events_are_forwarded(self, service, tmp_path):
        handler = WorkspaceWatchHandler(service)

        handler.on_created(FileCreatedEvent(str(tmp_path / "a.cpp")))
        handler.on_deleted(FileDeletedEvent(str(tmp_path / "b.cpp")))
        handler.on_modified(FileModifiedEvent(str(tmp_path / "c.cpp")))

        assert service.notify_file_change.call_args_list == [
            call(tmp_path / "a.cpp", CHANGE_CREATED),
            call(tmp_path / "b.cpp", CHANGE_DELETED),
            call(tmp_path / "c.cpp", CHANGE_MODIFIED),
        ]
        assert handler.get_statistics() == {
            "files_created": 1,
            "files_deleted": 1,
            "files_modified": 1,
            "settings_reloads": 0,
        }

    def test_directory_events(self, service, tmp_path):
        handler = WorkspaceWatchHandler(service)

        handler.on_created(DirCreatedEvent(str(tmp_path / "new")))
        handler.on_modified(DirModifiedEvent(str(tmp_path / "new")))
        handler.on_deleted(DirDeletedEvent(str(tmp_path / "gone")))

        service.notify_file_change.assert_called_once_with(tmp_path / "gone", CHANGE_DELETED)

    def test_move_is_delete_plus_create(self, service, tmp_path):
        handler = WorkspaceWatchHandler(service)

        handler.on_moved(FileMovedEvent(str(tmp_path / "old.cpp"), str(tmp_path / "new.cpp")))
        handler.on_moved(DirMovedEvent(str(tmp_path / "olddir"), str(tmp_path / "newdir")))

        assert service.notify_file_change.call_args_list == [
            call(tmp_path / "old.cpp", CHANGE_DELETED),
            call(tmp_path / "new.cpp", CHANGE_CREATED),
            call(tmp_path / "olddir", CHANGE_DELETED),
        ]

    def test_bytes_paths_are_decoded(self, service, tmp_path):
        handler = WorkspaceWatchHandler(service)
        handler._post(str(tmp_path / "a.cpp").encode("utf-8"), CHANGE_CREATED)
        service.notify_file_change.assert_called_once_with(tmp_path / "a.cpp", CHANGE_CREATED)

    def test_settings_file_triggers_reload_only(self, service, tmp_path):
        settings = tmp_path / ".qgrep-indexer" / "config.json"
        reload = MagicMock()
        handler = WorkspaceWatchHandler(service, settings, reload)

        handler.on_modified(FileModifiedEvent(str(settings)))
        handler.on_created(FileCreatedEvent(str(settings)))
        handler.on_deleted(FileDeletedEvent(str(settings)))

        assert reload.call_count == 2
        service.notify_file_change.assert_not_called()
        assert handler.get_statistics()["settings_reloads"] == 2

    def test_failing_reload_is_logged(self, service, tmp_path, caplog):
        settings = tmp_path / "config.json"
        handler = WorkspaceWatchHandler(service, settings, MagicMock(side_effect=ValueError("bad json")))

        handler.on_modified(FileModifiedEvent(str(settings)))

        assert "bad json" in caplog.text

    def test_stop_without_start(self, service):
        handler = WorkspaceWatchHandler(service)
        handler.stop_watching()
        assert handler.observer is None


@pytest.mark.slow
class TestWorkspaceWatchHandlerObserver:
    @pytest.mark.asyncio
    async def test_observer_reports_new_file(self, service, make_root):
        root = make_root("Alpha")
        handler = WorkspaceWatchHandler(service)
        handler.start_watching([root])
        try:
            (root.path / "fresh.cpp").write_text("int x;\n", encoding="utf-8")
            await wait_until(
                lambda: call(root.path / "fresh.cpp", CHANGE_CREATED)
                in service.notify_file_change.call_args_list,
                timeout=5.0,
            )
        finally:
            handler.stop_watching()
        assert handler.observer is None
