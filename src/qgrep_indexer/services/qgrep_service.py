"""
Service handle wiring the qgrep-indexer components together.

Whoever owns the service calls ``start()`` with the current workspace roots
and ``stop()`` on shutdown; everything else (bulk index commands, queries,
status, host event notification) goes through this object.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..config import Config
from ..errors import NoWorkspaceError, NotInitializedError, OperationCancelledError
from .command_runner import CommandRunner
from .index_orchestrator import (
    FileSystemChange,
    IgnorePatternsChanged,
    IndexOrchestrator,
    WorkspaceRootsChanged,
)
from .managed_config import ManagedConfigWriter
from .query_engine import FileSearchRequest, QueryEngine, TextSearchRequest
from .status_reporter import StatusReporter
from .workspace_state import WorkspaceIndexState, WorkspaceRoot, WorkspaceStateStore

logger = logging.getLogger(__name__)


@dataclass
class CommandSummary:
    """Outcome of a bulk index command across workspace roots."""

    total_workspaces: int
    processed: int
    message: str
    failures: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalWorkspaces": self.total_workspaces,
            "processed": self.processed,
            "failed": self.failed,
            "failures": list(self.failures),
            "cancelled": list(self.cancelled),
            "message": self.message,
        }


class QgrepService:
    """Explicit, non-singleton handle for the indexing and query service."""

    def __init__(
        self,
        config: Config,
        runner: Optional[CommandRunner] = None,
    ):
        self.config = config
        self.ignore_patterns: Dict[str, Any] = dict(config.ignore_patterns)
        self.store = WorkspaceStateStore(config.index_dir_name, config.config_file_name)
        self.runner = runner or CommandRunner()
        self.config_writer = ManagedConfigWriter(config, lambda: self.ignore_patterns)
        self.orchestrator = IndexOrchestrator(config, self.store, self.runner, self.config_writer)
        self.query_engine = QueryEngine(config, self.store, self.orchestrator, self.runner)
        self.status_reporter = StatusReporter(self.store, self.orchestrator)

    async def start(self, roots: Iterable[WorkspaceRoot], watch: bool = True) -> None:
        await self.orchestrator.start(roots, watch=watch)
        logger.info(f"Qgrep service started for {len(self.store)} workspace(s)")

    async def stop(self) -> None:
        await self.orchestrator.stop()

    async def __aenter__(self) -> "QgrepService":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Bulk index commands
    # ------------------------------------------------------------------

    async def init_all(self) -> CommandSummary:
        """Initialize (or refresh) every root."""
        states = self.store.all()
        if not states:
            raise NoWorkspaceError()
        self.orchestrator.require_binary()
        return await self._run_bulk(states, self.orchestrator.init_workspace, "initialized")

    async def update_all(self) -> CommandSummary:
        """Incrementally update every initialized root."""
        states = self._require_initialized()
        self.orchestrator.require_binary()
        return await self._run_bulk(
            states,
            lambda state: self.orchestrator.update_workspace(state, resync_config=True),
            "updated",
        )

    async def rebuild_all(self) -> CommandSummary:
        """Rebuild every initialized root from scratch."""
        states = self._require_initialized()
        self.orchestrator.require_binary()
        return await self._run_bulk(states, self.orchestrator.rebuild_workspace, "rebuilt")

    async def clear_all(self) -> CommandSummary:
        """Stop watching and delete the index of every initialized root."""
        states = [
            state
            for state in self.store.all()
            if state.is_initialized
            or state.operations.queued_count > 0
            or state.active_command is not None
        ]
        if not states:
            return CommandSummary(0, 0, "No initialized qgrep workspace found.")
        return await self._run_bulk(states, self.orchestrator.clear_workspace, "cleared")

    def _require_initialized(self) -> List[WorkspaceIndexState]:
        states = self.store.initialized()
        if not states:
            raise NotInitializedError()
        return states

    async def _run_bulk(
        self,
        states: List[WorkspaceIndexState],
        operation: Callable[[WorkspaceIndexState], Awaitable[None]],
        verb: str,
    ) -> CommandSummary:
        processed = 0
        failures: List[str] = []
        cancelled: List[str] = []
        for state in states:
            try:
                await operation(state)
                processed += 1
            except OperationCancelledError as e:
                cancelled.append(f"{state.name}: {e}")
            except Exception as e:
                logger.warning(f"Qgrep index {verb} failed for '{state.name}': {e}")
                failures.append(f"{state.name}: {e}")

        total = len(states)
        message = f"Qgrep index {verb} for {processed}/{total} workspace(s)"
        if failures:
            message += f", {len(failures)} failed"
        if cancelled:
            message += f", {len(cancelled)} cancelled"
        return CommandSummary(total, processed, message + ".", failures, cancelled)

    # ------------------------------------------------------------------
    # Queries and status
    # ------------------------------------------------------------------

    async def search(
        self, request: Union[TextSearchRequest, Mapping[str, Any]]
    ) -> Dict[str, Any]:
        return await self.query_engine.search_text(request)

    async def search_files(
        self, request: Union[FileSearchRequest, Mapping[str, Any]]
    ) -> Dict[str, Any]:
        return await self.query_engine.search_files(request)

    def get_status_summary(self) -> Dict[str, Any]:
        return self.status_reporter.summary()

    def add_status_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        return self.store.add_status_listener(listener)

    # ------------------------------------------------------------------
    # Host events (thread-safe)
    # ------------------------------------------------------------------

    def notify_file_change(self, path: Union[str, Path], kind: str) -> None:
        self.orchestrator.post_event(FileSystemChange(Path(path), kind))

    def set_ignore_patterns(self, patterns: Mapping[str, Any]) -> None:
        """Replace the ignore-pattern map and resync every initialized root."""
        self.ignore_patterns = dict(patterns)
        self.orchestrator.post_event(IgnorePatternsChanged())

    def notify_workspace_roots_changed(
        self,
        added: Iterable[WorkspaceRoot] = (),
        removed: Iterable[WorkspaceRoot] = (),
    ) -> None:
        self.orchestrator.post_event(WorkspaceRootsChanged(tuple(added), tuple(removed)))

    async def wait_for_events(self) -> None:
        await self.orchestrator.wait_for_events()
