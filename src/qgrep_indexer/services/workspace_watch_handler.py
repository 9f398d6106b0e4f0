"""
Watchdog adapter feeding file system changes into the qgrep service.

Runs on watchdog's observer thread and only posts events; all state changes
happen on the service's event loop.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

from watchdog.events import FileSystemEventHandler

from .index_orchestrator import CHANGE_CREATED, CHANGE_DELETED, CHANGE_MODIFIED
from .qgrep_service import QgrepService
from .workspace_state import WorkspaceRoot, normalize_for_comparison

logger = logging.getLogger(__name__)


class WorkspaceWatchHandler(FileSystemEventHandler):
    """File system event handler that forwards changes to a QgrepService."""

    def __init__(
        self,
        service: QgrepService,
        settings_path: Optional[Path] = None,
        on_settings_changed: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize workspace watch handler.

        Args:
            service: Running QgrepService to notify
            settings_path: qgrep-indexer config.json to watch for ignore-pattern edits
            on_settings_changed: Called (on the observer thread) when settings_path changes
        """
        super().__init__()
        self.service = service
        self._settings_key = (
            normalize_for_comparison(settings_path) if settings_path else None
        )
        self._on_settings_changed = on_settings_changed
        self.observer: Optional[Any] = None

        # Statistics
        self.created_count = 0
        self.deleted_count = 0
        self.modified_count = 0
        self.settings_reload_count = 0

    def start_watching(
        self, roots: Iterable[WorkspaceRoot], extra_dirs: Iterable[Path] = ()
    ) -> None:
        """Schedule a recursive observer on every root.

        extra_dirs (e.g. the settings directory when it lives outside every
        root) are watched non-recursively.
        """
        from watchdog.observers import Observer

        self.observer = Observer()
        for root in roots:
            self.observer.schedule(self, str(root.path), recursive=True)
            logger.info(f"File system observer scheduled for {root.path}")
        for directory in extra_dirs:
            if directory.is_dir():
                self.observer.schedule(self, str(directory), recursive=False)
        self.observer.start()

    def stop_watching(self) -> None:
        if self.observer and self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=5.0)
            logger.info("File system observer stopped")
        self.observer = None

    def on_created(self, event):
        """Handle file creation events."""
        if event.is_directory:
            return
        self._post(event.src_path, CHANGE_CREATED)

    def on_deleted(self, event):
        """Handle file and directory deletion events."""
        # A deleted directory takes its files with it, so it counts too.
        self._post(event.src_path, CHANGE_DELETED)

    def on_modified(self, event):
        if event.is_directory:
            return
        self._post(event.src_path, CHANGE_MODIFIED)

    def on_moved(self, event):
        """Treat a move as delete of the old path plus create of the new one."""
        self._post(event.src_path, CHANGE_DELETED)
        if not event.is_directory:
            self._post(event.dest_path, CHANGE_CREATED)

    def _post(self, raw_path, kind: str) -> None:
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode("utf-8", errors="replace")
        path = Path(raw_path)

        if self._settings_key and normalize_for_comparison(path) == self._settings_key:
            if kind != CHANGE_DELETED and self._on_settings_changed is not None:
                self.settings_reload_count += 1
                try:
                    self._on_settings_changed()
                except Exception as e:
                    logger.warning(f"Failed to reload qgrep-indexer settings: {e}")
            return

        if kind == CHANGE_CREATED:
            self.created_count += 1
        elif kind == CHANGE_DELETED:
            self.deleted_count += 1
        else:
            self.modified_count += 1
        self.service.notify_file_change(path, kind)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "files_created": self.created_count,
            "files_deleted": self.deleted_count,
            "files_modified": self.modified_count,
            "settings_reloads": self.settings_reload_count,
        }
