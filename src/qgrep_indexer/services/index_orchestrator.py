"""
Index operation orchestrator.

Drives init / update / rebuild / clear for every workspace root through a
per-root OperationQueue, supervises the long-lived ``qgrep watch`` process,
and turns host events (file create/delete, ignore-pattern changes, root
changes) into debounced automatic updates.

Host events arrive through ``post_event`` (safe to call from any thread, e.g.
a watchdog observer) and are handled one at a time by a dispatcher task on
the event loop, so every state transition happens on that loop.
"""

import asyncio
import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, TypeVar

from ..config import Config
from ..errors import (
    EngineCommandError,
    EngineUnavailableError,
    InitTimeoutError,
    NotInitializedError,
    OperationCancelledError,
    QgrepIndexerError,
)
from .command_runner import (
    CommandResult,
    CommandRunner,
    CommandSpawnError,
    ProgressFrame,
    extract_command_error,
)
from .managed_config import ManagedConfigWriter
from .workspace_state import (
    WorkspaceIndexState,
    WorkspaceRoot,
    WorkspaceStateStore,
    is_path_inside_root,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHANGE_CREATED = "created"
CHANGE_DELETED = "deleted"
CHANGE_MODIFIED = "modified"


class IndexPhase(str, Enum):
    """Externally visible phase of one root's index."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    UPDATING = "updating"
    REBUILDING = "rebuilding"
    CLEARING = "clearing"


_PHASE_BY_OPERATION = {
    "init": IndexPhase.INITIALIZING,
    "update": IndexPhase.UPDATING,
    "rebuild": IndexPhase.REBUILDING,
    "clear": IndexPhase.CLEARING,
}


@dataclass(frozen=True)
class FileSystemChange:
    """A file was created, deleted or modified somewhere under a root."""

    path: Path
    kind: str


@dataclass(frozen=True)
class IgnorePatternsChanged:
    """The host's ignore-pattern configuration changed."""


@dataclass(frozen=True)
class WorkspaceRootsChanged:
    """Roots were added to or removed from the host workspace."""

    added: Tuple[WorkspaceRoot, ...] = ()
    removed: Tuple[WorkspaceRoot, ...] = ()


class IndexOrchestrator:
    """Serialized, cancelable index operations for every workspace root."""

    def __init__(
        self,
        config: Config,
        store: WorkspaceStateStore,
        runner: Optional[CommandRunner] = None,
        config_writer: Optional[ManagedConfigWriter] = None,
    ):
        self.config = config
        self.store = store
        self.runner = runner or CommandRunner()
        self.config_writer = config_writer or ManagedConfigWriter(config)
        self.binary_path: Path = config.resolve_binary_path()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: Optional["asyncio.Queue[object]"] = None
        self._dispatcher: Optional["asyncio.Task[None]"] = None
        self._background: Set["asyncio.Task[object]"] = set()
        self._started = False
        self._disposed = False
        self._watch_enabled = True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._started and not self._disposed

    async def start(
        self, roots: Optional[Iterable[WorkspaceRoot]] = None, watch: bool = True
    ) -> None:
        """Start the event dispatcher and watch every initialized root.

        With ``watch=False`` no ``qgrep watch`` processes are supervised, for
        one-shot commands that exit right after their operation.
        """
        if self._disposed:
            raise RuntimeError("IndexOrchestrator cannot be restarted after stop()")
        if self._started:
            return
        self._watch_enabled = watch
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._dispatcher = self._loop.create_task(self._dispatch_events())
        self._started = True

        if roots is not None:
            self.sync_roots(roots)
        for state in self.store.initialized():
            self.start_watch(state)
        self.store.notify_changed()

    async def stop(self) -> None:
        """Stop watches, timers and pending work. Safe to call repeatedly."""
        if self._disposed:
            return
        self._disposed = True

        for state in self.store.all():
            self._release_state(state)

        tasks: List[asyncio.Task] = list(self._background)
        if self._dispatcher is not None:
            tasks.append(self._dispatcher)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        self._dispatcher = None
        self.store.notify_changed()
        logger.info("Qgrep orchestrator stopped")

    def sync_roots(self, roots: Iterable[WorkspaceRoot]) -> None:
        """Match tracked roots to the host's current root list."""
        added, removed = self.store.sync(roots)
        for state in removed:
            self._release_state(state)
        for state in added:
            if state.is_initialized:
                self.start_watch(state)

    def _release_state(self, state: WorkspaceIndexState) -> None:
        state.operations.cancel_pending()
        self._cancel_debounce(state)
        self.stop_watch(state)
        if state.active_command is not None:
            state.active_command.cancel()

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    def post_event(self, event: object) -> None:
        """Queue a host event. Callable from any thread."""
        if self._loop is None or self._events is None or self._disposed:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._events.put_nowait(event)
            return
        try:
            self._loop.call_soon_threadsafe(self._events.put_nowait, event)
        except RuntimeError:
            logger.debug(f"Event loop closed, dropping {type(event).__name__}")

    async def wait_for_events(self) -> None:
        """Wait until every posted event has been handled."""
        if self._events is not None:
            await self._events.join()

    async def _dispatch_events(self) -> None:
        assert self._events is not None
        while True:
            event = await self._events.get()
            try:
                self._handle_event(event)
            except Exception as e:
                logger.error(f"Failed to handle {type(event).__name__}: {e}", exc_info=True)
            finally:
                self._events.task_done()

    def _handle_event(self, event: object) -> None:
        if isinstance(event, FileSystemChange):
            self._handle_file_change(event)
        elif isinstance(event, IgnorePatternsChanged):
            self._handle_ignore_patterns_changed()
        elif isinstance(event, WorkspaceRootsChanged):
            self._handle_roots_changed(event)
        else:
            logger.warning(f"Ignoring unknown event {event!r}")

    def _handle_file_change(self, event: FileSystemChange) -> None:
        # Content edits are picked up by the engine's own watch process.
        if event.kind not in (CHANGE_CREATED, CHANGE_DELETED):
            return
        state = self.store.find_for_path(event.path)
        if state is None or not state.is_initialized:
            return
        if is_path_inside_root(state.index_dir_path, event.path):
            return
        state.pending_create_delete_count += 1
        state.auto_update_dirty = True
        self._arm_auto_update(state, self.config.timing.file_event_debounce)

    def _handle_ignore_patterns_changed(self) -> None:
        for state in self.store.initialized():
            state.managed_config_dirty = True
            state.auto_update_dirty = True
            self._arm_auto_update(state, self.config.timing.ignore_resync_debounce)

    def _handle_roots_changed(self, event: WorkspaceRootsChanged) -> None:
        changed = False
        for root in event.removed:
            state = self.store.remove(root)
            if state is not None:
                logger.info(f"Workspace '{state.name}' removed")
                self._release_state(state)
                changed = True
        for root in event.added:
            state = self.store.add(root)
            if state is not None:
                logger.info(f"Workspace '{state.name}' added")
                if state.is_initialized:
                    self.start_watch(state)
                changed = True
        if changed:
            self.store.notify_changed()

    # ------------------------------------------------------------------
    # Auto-update debounce
    # ------------------------------------------------------------------

    def _arm_auto_update(self, state: WorkspaceIndexState, delay: float) -> None:
        assert self._loop is not None
        self._cancel_debounce(state)
        state.debounce_timer = self._loop.call_later(delay, self._on_auto_update_timer, state)

    def _cancel_debounce(self, state: WorkspaceIndexState) -> None:
        if state.debounce_timer is not None:
            state.debounce_timer.cancel()
            state.debounce_timer = None

    def _reset_auto_update(self, state: WorkspaceIndexState) -> None:
        self._cancel_debounce(state)
        state.auto_update_dirty = False
        state.auto_update_deferred = False
        state.managed_config_dirty = False
        state.pending_create_delete_count = 0

    def _on_auto_update_timer(self, state: WorkspaceIndexState) -> None:
        state.debounce_timer = None
        if not self._is_live(state) or not state.auto_update_dirty:
            return
        if not state.is_initialized:
            self._reset_auto_update(state)
            return
        if state.operations.is_busy:
            logger.debug(f"Auto-update for '{state.name}' deferred, operation in progress")
            state.auto_update_deferred = True
            return
        self._spawn(self._run_auto_update(state))

    async def _run_auto_update(self, state: WorkspaceIndexState) -> None:
        resync = state.managed_config_dirty
        changes = state.pending_create_delete_count
        state.auto_update_dirty = False
        state.auto_update_deferred = False
        state.managed_config_dirty = False
        state.pending_create_delete_count = 0

        logger.info(
            f"Auto-updating qgrep index for '{state.name}' "
            f"({changes} file change(s){', config resync' if resync else ''})"
        )
        try:
            await self.update_workspace(state, resync_config=resync)
        except OperationCancelledError as e:
            logger.info(f"Auto-update for '{state.name}' cancelled: {e}")
        except Exception as e:
            logger.warning(f"Auto-update failed for workspace '{state.name}': {e}")

    def _after_operation(self, state: WorkspaceIndexState) -> None:
        if not self._is_live(state) or state.operations.is_busy:
            return
        if state.is_initialized:
            self.start_watch(state)
        if state.auto_update_dirty and state.debounce_timer is None:
            if state.is_initialized:
                self._spawn(self._run_auto_update(state))
            else:
                self._reset_auto_update(state)

    # ------------------------------------------------------------------
    # Index operations
    # ------------------------------------------------------------------

    def binary_available(self) -> bool:
        return self.binary_path.exists()

    def require_binary(self) -> Path:
        if not self.binary_available():
            raise EngineUnavailableError(f"qgrep binary is not available at {self.binary_path}.")
        return self.binary_path

    def get_phase(self, state: WorkspaceIndexState) -> IndexPhase:
        current = state.operations.current
        if current in _PHASE_BY_OPERATION:
            return _PHASE_BY_OPERATION[current]
        return IndexPhase.READY if state.is_initialized else IndexPhase.UNINITIALIZED

    async def init_workspace(self, state: WorkspaceIndexState) -> None:
        """Create (if needed) and update the index, then start watching."""
        self.require_binary()
        await self._run_exclusive(state, "init", lambda: self._init_now(state))

    async def update_workspace(
        self, state: WorkspaceIndexState, resync_config: bool = False
    ) -> None:
        """Incremental update, optionally rewriting managed config first."""
        self.require_binary()
        if not state.is_initialized:
            raise NotInitializedError(state.name)
        await self._run_exclusive(
            state, "update", lambda: self._update_now(state, resync_config)
        )

    async def rebuild_workspace(self, state: WorkspaceIndexState) -> None:
        """Full rebuild (``qgrep build``), initializing first if needed."""
        self.require_binary()
        await self._run_exclusive(state, "rebuild", lambda: self._rebuild_now(state))

    async def clear_workspace(self, state: WorkspaceIndexState) -> None:
        """Cancel everything in flight for the root and delete its index."""
        state.operations.cancel_pending()
        self._reset_auto_update(state)
        self.stop_watch(state)
        if state.active_command is not None:
            logger.info(f"Cancelling running qgrep {state.active_command.verb} for '{state.name}'")
            state.active_command.cancel()
        await self._run_exclusive(
            state,
            "clear",
            lambda: self._clear_now(state),
            counted=False,
            cancellable=False,
        )

    async def wait_until_ready(
        self,
        states: Sequence[WorkspaceIndexState],
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> None:
        """Initialize uninitialized roots and wait for them, bounded by timeout.

        Raises:
            InitTimeoutError: If some roots are still not ready at the deadline
            QgrepIndexerError: If an initialization fails or is cancelled
        """
        timeout = self.config.timing.init_wait_timeout if timeout is None else timeout
        poll_interval = poll_interval or self.config.timing.init_poll_interval
        waiting = [state for state in states if not state.is_initialized]
        if not waiting:
            return
        self.require_binary()

        loop = asyncio.get_running_loop()
        init_tasks: Dict[str, asyncio.Task] = {}
        for state in waiting:
            running = state.on_demand_init
            if running is not None and not running.done():
                init_tasks[state.key] = running
            elif state.operations.pending_index_operation_count == 0:
                logger.info(f"Initializing qgrep index for '{state.name}' on demand")
                state.on_demand_init = self._spawn(self.init_workspace(state))
                init_tasks[state.key] = state.on_demand_init

        def is_ready(state: WorkspaceIndexState) -> bool:
            task = init_tasks.get(state.key)
            if task is not None:
                return task.done() and state.is_initialized
            return state.is_initialized and state.operations.pending_index_operation_count == 0

        deadline = loop.time() + timeout
        while True:
            for task in init_tasks.values():
                if task.done() and not task.cancelled() and task.exception() is not None:
                    raise task.exception()  # type: ignore[misc]
            not_ready = [state for state in waiting if not is_ready(state)]
            if not not_ready:
                return
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise InitTimeoutError([state.name for state in not_ready], timeout)
            await asyncio.sleep(min(poll_interval, remaining))

    async def _run_exclusive(
        self,
        state: WorkspaceIndexState,
        name: str,
        operation: Callable[[], Awaitable[T]],
        counted: bool = True,
        cancellable: bool = True,
    ) -> T:
        try:
            return await state.operations.run(
                name, operation, counted=counted, cancellable=cancellable
            )
        finally:
            self._after_operation(state)

    async def _init_now(self, state: WorkspaceIndexState) -> None:
        generation = state.operations.generation
        self.stop_watch(state)
        state.index_dir_path.mkdir(parents=True, exist_ok=True)
        try:
            if not state.is_initialized:
                await self._run_index_command(
                    state,
                    generation,
                    ["init", str(state.config_path), str(state.root_path)],
                    "Init",
                )
            self._sync_managed_config(state)
            await self._run_index_command(
                state, generation, ["update", str(state.config_path)], "Update"
            )
        except OperationCancelledError:
            raise
        except Exception:
            self._mark_failed(state)
            raise
        logger.info(f"Qgrep index initialized for workspace '{state.name}'")

    async def _update_now(self, state: WorkspaceIndexState, resync_config: bool) -> None:
        generation = state.operations.generation
        if not state.is_initialized:
            raise NotInitializedError(state.name)
        self.stop_watch(state)
        try:
            if resync_config:
                self._sync_managed_config(state)
            await self._run_index_command(
                state, generation, ["update", str(state.config_path)], "Update"
            )
        except OperationCancelledError:
            raise
        except Exception:
            self._mark_failed(state)
            raise

    async def _rebuild_now(self, state: WorkspaceIndexState) -> None:
        generation = state.operations.generation
        self.stop_watch(state)
        state.index_dir_path.mkdir(parents=True, exist_ok=True)
        try:
            if not state.is_initialized:
                await self._run_index_command(
                    state,
                    generation,
                    ["init", str(state.config_path), str(state.root_path)],
                    "Init",
                )
            self._sync_managed_config(state)
            await self._run_index_command(
                state, generation, ["build", str(state.config_path)], "Build"
            )
        except OperationCancelledError:
            raise
        except Exception:
            self._mark_failed(state)
            raise
        logger.info(f"Qgrep index rebuilt for workspace '{state.name}'")

    async def _clear_now(self, state: WorkspaceIndexState) -> None:
        self.stop_watch(state)
        if state.index_dir_path.exists():
            await asyncio.to_thread(shutil.rmtree, state.index_dir_path)
        state.reset_progress()
        self.store.notify_changed()
        logger.info(f"Qgrep index cleared for workspace '{state.name}'")

    async def _run_index_command(
        self,
        state: WorkspaceIndexState,
        generation: int,
        args: List[str],
        purpose: str,
    ) -> CommandResult:
        cancelled_message = f"{purpose} cancelled for workspace '{state.name}'."
        if self._disposed or generation != state.operations.generation:
            raise OperationCancelledError(cancelled_message)

        command = await self.runner.start(
            self.binary_path,
            args,
            state.root_path,
            on_progress=lambda frame: self._apply_progress(state, frame),
            tag=state.key,
        )
        state.active_command = command
        if self._disposed or generation != state.operations.generation:
            # Cleared while the process was being spawned.
            command.cancel()
        self._set_indexing(state, True)
        try:
            result = await command.wait()
        finally:
            if state.active_command is command:
                state.active_command = None
            self._set_indexing(state, False)

        if command.cancelled:
            raise OperationCancelledError(cancelled_message)
        error = extract_command_error(result, f"{purpose} failed for workspace '{state.name}'.")
        if error:
            raise EngineCommandError(error)
        return result

    def _sync_managed_config(self, state: WorkspaceIndexState) -> None:
        try:
            self.config_writer.sync(state.config_path)
        except OSError as e:
            raise QgrepIndexerError(
                f"Failed to update managed config for workspace '{state.name}': {e}"
            ) from e

    def _apply_progress(self, state: WorkspaceIndexState, frame: ProgressFrame) -> None:
        if state.progress.apply_frame(frame):
            self.store.notify_changed()

    def _set_indexing(self, state: WorkspaceIndexState, indexing: bool) -> None:
        if state.progress.indexing == indexing:
            return
        state.progress.indexing = indexing
        self.store.notify_changed()

    def _mark_failed(self, state: WorkspaceIndexState) -> None:
        if state.progress.mark_failed():
            self.store.notify_changed()

    # ------------------------------------------------------------------
    # Watch supervision
    # ------------------------------------------------------------------

    def start_watch(self, state: WorkspaceIndexState) -> None:
        """Start ``qgrep watch`` for an initialized, idle root."""
        if not self.is_running or not self._watch_enabled:
            return
        if state.watch_task is not None and not state.watch_task.done():
            return
        if not state.is_initialized or state.operations.is_busy:
            return
        if not self.binary_available():
            logger.warning(
                f"Qgrep binary missing at {self.binary_path}. Watch skipped for '{state.name}'."
            )
            return

        self._cancel_restart_timer(state)
        state.restart_on_exit = True
        state.watch_generation += 1
        state.watch_task = self._spawn(self._supervise_watch(state, state.watch_generation))

    def stop_watch(self, state: WorkspaceIndexState) -> None:
        """Stop the watch process and any pending restart."""
        state.restart_on_exit = False
        state.watch_generation += 1
        state.watch_task = None
        self._cancel_restart_timer(state)
        command = state.watch_command
        if command is None:
            return
        state.watch_command = None
        command.kill()
        self.store.notify_changed()

    async def _supervise_watch(self, state: WorkspaceIndexState, generation: int) -> None:
        name = state.name
        try:
            command = await self.runner.start(
                self.binary_path,
                ["watch", str(state.config_path)],
                state.root_path,
                on_progress=lambda frame: self._apply_progress(state, frame),
                on_stdout_line=lambda line: self._log_watch_line(name, line, logging.INFO),
                on_stderr_line=lambda line: self._log_watch_line(name, line, logging.WARNING),
                tag=state.key,
            )
        except CommandSpawnError as e:
            logger.error(f"[qgrep.watch:{name}] process error: {e}")
            self._schedule_watch_restart(state, generation)
            return

        if generation != state.watch_generation:
            command.kill()
            return
        state.watch_command = command
        self.store.notify_changed()
        logger.info(f"Started qgrep watch for workspace '{name}' (pid {command.pid})")

        result = await command.wait()
        if state.watch_command is command:
            state.watch_command = None
            self.store.notify_changed()
        if generation != state.watch_generation:
            return
        logger.info(f"Qgrep watch for workspace '{name}' exited with code {result.exit_code}")
        self._schedule_watch_restart(state, generation)

    def _schedule_watch_restart(self, state: WorkspaceIndexState, generation: int) -> None:
        if generation != state.watch_generation:
            return
        state.watch_task = None
        if not state.restart_on_exit or not self._is_live(state) or not state.is_initialized:
            return
        assert self._loop is not None
        self._cancel_restart_timer(state)
        state.restart_timer = self._loop.call_later(
            self.config.timing.watch_restart_delay, self._restart_watch, state
        )

    def _restart_watch(self, state: WorkspaceIndexState) -> None:
        state.restart_timer = None
        if self._is_live(state):
            self.start_watch(state)

    def _cancel_restart_timer(self, state: WorkspaceIndexState) -> None:
        if state.restart_timer is not None:
            state.restart_timer.cancel()
            state.restart_timer = None

    @staticmethod
    def _log_watch_line(name: str, line: str, level: int) -> None:
        text = line.strip()
        if text:
            logger.log(level, f"[qgrep.watch:{name}] {text}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _is_live(self, state: WorkspaceIndexState) -> bool:
        return self.is_running and self.store.get(state.root) is state

    def _spawn(self, coro: Awaitable[T]) -> "asyncio.Task[T]":
        assert self._loop is not None
        task = self._loop.create_task(coro)  # type: ignore[arg-type]
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, QgrepIndexerError):
            logger.error(f"Background task failed: {error}", exc_info=error)
