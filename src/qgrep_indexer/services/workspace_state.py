"""Per-workspace index state and the store that keeps it in sync with the host."""

import asyncio
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from ..errors import OperationCancelledError
from .command_runner import ProgressFrame, RunningCommand

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

T = TypeVar("T")
StatusListener = Callable[[], None]


def normalize_for_comparison(path: Union[str, Path]) -> str:
    """Absolute, normalized path string; lowercased on Windows."""
    resolved = os.path.normpath(os.path.abspath(str(path)))
    return resolved.lower() if IS_WINDOWS else resolved


def normalize_slash(path: Union[str, Path]) -> str:
    return str(path).replace("\\", "/")


def is_path_inside_root(root: Union[str, Path], target: Union[str, Path]) -> bool:
    """True if target is root itself or lies below it."""
    root_key = normalize_for_comparison(root)
    target_key = normalize_for_comparison(target)
    if root_key == target_key:
        return True
    return target_key.startswith(root_key.rstrip(os.sep) + os.sep)


@dataclass(frozen=True)
class WorkspaceRoot:
    """One workspace folder as reported by the host."""

    name: str
    path: Path

    @classmethod
    def from_path(cls, path: Union[str, Path], name: Optional[str] = None) -> "WorkspaceRoot":
        resolved = Path(os.path.abspath(str(path)))
        return cls(name=name or resolved.name or str(resolved), path=resolved)


@dataclass
class IndexProgress:
    """Indexing progress for one root, fed by engine progress frames."""

    indexed_files: Optional[int] = None
    total_files: Optional[int] = None
    remaining_files: Optional[int] = None
    progress_percent: Optional[int] = None
    progress_known: bool = False
    indexing: bool = False

    def apply_frame(self, frame: ProgressFrame) -> bool:
        """Apply a progress frame. Returns True if anything changed.

        A 100% frame fixes the total; the remaining count is derived whenever
        the total is known. The indexing flag is owned by the orchestrator.
        """
        total = frame.files if frame.percent == 100 else self.total_files
        remaining = max(total - frame.files, 0) if total is not None else None
        updated = (frame.files, total, remaining, frame.percent, total is not None)
        current = (
            self.indexed_files,
            self.total_files,
            self.remaining_files,
            self.progress_percent,
            self.progress_known,
        )
        if updated == current:
            return False
        (
            self.indexed_files,
            self.total_files,
            self.remaining_files,
            self.progress_percent,
            self.progress_known,
        ) = updated
        return True

    def mark_failed(self) -> bool:
        """Drop partial numbers from a failed run that never completed."""
        if self.progress_known:
            return False
        changed = any(
            value is not None
            for value in (self.indexed_files, self.remaining_files, self.progress_percent)
        )
        self.indexed_files = None
        self.remaining_files = None
        self.progress_percent = None
        return changed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "indexedFiles": self.indexed_files,
            "totalFiles": self.total_files,
            "remainingFiles": self.remaining_files,
            "progressPercent": self.progress_percent,
            "progressKnown": self.progress_known,
            "indexing": self.indexing,
        }


class OperationQueue:
    """
    Serializes index operations for one root.

    At most one operation runs at a time; later requests wait their turn.
    ``generation`` is bumped to cancel everything that was queued before the
    bump but has not started yet.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self.pending_index_operation_count = 0
        self.queued_count = 0
        self.generation = 0
        self.current: Optional[str] = None

    @property
    def is_busy(self) -> bool:
        return self.queued_count > 0

    def cancel_pending(self) -> None:
        self.generation += 1

    async def run(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        counted: bool = True,
        cancellable: bool = True,
    ) -> T:
        """Run operation once every earlier operation has finished.

        Args:
            name: Operation name (init, update, rebuild, clear)
            operation: Coroutine factory doing the work
            counted: Count toward pending_index_operation_count
            cancellable: Abort if cancel_pending() ran while waiting

        Raises:
            OperationCancelledError: If cancelled while still queued
        """
        generation = self.generation
        self.queued_count += 1
        if counted:
            self.pending_index_operation_count += 1
        try:
            async with self._lock:
                if cancellable and generation != self.generation:
                    raise OperationCancelledError(f"{name} was cancelled before it started.")
                self.current = name
                try:
                    return await operation()
                finally:
                    self.current = None
        finally:
            self.queued_count -= 1
            if counted:
                self.pending_index_operation_count -= 1


class WorkspaceIndexState:
    """Everything the service tracks for one workspace root."""

    def __init__(self, root: WorkspaceRoot, index_dir_name: str, config_file_name: str):
        self.root = root
        self.key = normalize_for_comparison(root.path)
        self.index_dir_path = root.path / index_dir_name
        self.config_path = self.index_dir_path / config_file_name
        self.progress = IndexProgress()
        self.operations = OperationQueue()
        self.active_command: Optional[RunningCommand] = None

        # Watch supervision
        self.watch_command: Optional[RunningCommand] = None
        self.watch_task: Optional["asyncio.Task[None]"] = None
        self.watch_generation = 0
        self.restart_on_exit = False
        self.restart_timer: Optional[asyncio.TimerHandle] = None

        # Auto-update debounce
        self.auto_update_dirty = False
        self.auto_update_deferred = False
        self.pending_create_delete_count = 0
        self.managed_config_dirty = False
        self.debounce_timer: Optional[asyncio.TimerHandle] = None

        # Query-triggered initialization shared by concurrent waiters
        self.on_demand_init: Optional["asyncio.Task[None]"] = None

    @property
    def name(self) -> str:
        return self.root.name

    @property
    def root_path(self) -> Path:
        return self.root.path

    @property
    def is_initialized(self) -> bool:
        return self.config_path.exists()

    @property
    def is_watching(self) -> bool:
        return self.watch_command is not None and self.watch_command.is_alive

    def reset_progress(self) -> None:
        self.progress = IndexProgress()

    def __repr__(self) -> str:
        return f"WorkspaceIndexState(name={self.name!r}, root={str(self.root_path)!r})"


class WorkspaceStateStore:
    """One WorkspaceIndexState per root, kept in the host's root order."""

    def __init__(self, index_dir_name: str, config_file_name: str):
        self.index_dir_name = index_dir_name
        self.config_file_name = config_file_name
        self._states: Dict[str, WorkspaceIndexState] = {}
        self._listeners: List[StatusListener] = []

    def __len__(self) -> int:
        return len(self._states)

    def all(self) -> List[WorkspaceIndexState]:
        return list(self._states.values())

    def initialized(self) -> List[WorkspaceIndexState]:
        return [state for state in self._states.values() if state.is_initialized]

    def get(self, root: Union[WorkspaceRoot, str, Path]) -> Optional[WorkspaceIndexState]:
        path = root.path if isinstance(root, WorkspaceRoot) else root
        return self._states.get(normalize_for_comparison(path))

    def get_by_name(self, name: str) -> Optional[WorkspaceIndexState]:
        expected = name.lower() if IS_WINDOWS else name
        for state in self._states.values():
            candidate = state.name.lower() if IS_WINDOWS else state.name
            if candidate == expected:
                return state
        return None

    def find_for_path(self, path: Union[str, Path]) -> Optional[WorkspaceIndexState]:
        """Deepest root containing path."""
        best: Optional[WorkspaceIndexState] = None
        for state in self._states.values():
            if not is_path_inside_root(state.root_path, path):
                continue
            if best is None or len(state.key) > len(best.key):
                best = state
        return best

    def add(self, root: WorkspaceRoot) -> Optional[WorkspaceIndexState]:
        """Create state for a new root. Returns None if it already exists."""
        key = normalize_for_comparison(root.path)
        if key in self._states:
            return None
        state = WorkspaceIndexState(root, self.index_dir_name, self.config_file_name)
        self._states[key] = state
        logger.debug(f"Tracking workspace '{root.name}' at {root.path}")
        return state

    def remove(self, root: Union[WorkspaceRoot, str, Path]) -> Optional[WorkspaceIndexState]:
        path = root.path if isinstance(root, WorkspaceRoot) else root
        return self._states.pop(normalize_for_comparison(path), None)

    def sync(
        self, roots: Iterable[WorkspaceRoot]
    ) -> Tuple[List[WorkspaceIndexState], List[WorkspaceIndexState]]:
        """Match the store to the host's live root list.

        Returns:
            (added states, removed states)
        """
        roots = list(roots)
        expected = {normalize_for_comparison(root.path): root for root in roots}
        added: List[WorkspaceIndexState] = []
        removed: List[WorkspaceIndexState] = []

        for key in list(self._states):
            if key not in expected:
                removed.append(self._states.pop(key))

        ordered: Dict[str, WorkspaceIndexState] = {}
        for key, root in expected.items():
            state = self._states.get(key)
            if state is None:
                state = WorkspaceIndexState(root, self.index_dir_name, self.config_file_name)
                added.append(state)
            else:
                # Folder may have been renamed without moving.
                state.root = root
            ordered[key] = state
        self._states = ordered

        if added or removed:
            self.notify_changed()
        return added, removed

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that unregisters it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def notify_changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.warning(f"Qgrep status change handler failed: {e}")
