"""Exception hierarchy for qgrep-indexer.

Errors fall into four families that callers treat differently:

- input errors (``QueryInputError`` and subclasses) are raised before any
  subprocess is launched;
- engine errors (``EngineCommandError``) carry the failed command's purpose
  and workspace name as a message prefix;
- environment errors (``EngineUnavailableError``, ``NoWorkspaceError``,
  ``NotInitializedError``) are raised before any state mutation;
- cancellation (``OperationCancelledError``) marks work killed by a concurrent
  clear or shutdown and must not be counted as a failure.
"""

from typing import List, Optional


INIT_COMMAND_HINT = 'Run "qgrep-indexer init" first.'


class QgrepIndexerError(Exception):
    """Base exception for qgrep-indexer errors."""

    pass


class QueryInputError(QgrepIndexerError):
    """Malformed query input (bad query, ceiling, mode or search path)."""

    pass


class GlobPatternError(QueryInputError):
    """A glob pattern could not be compiled."""

    def __init__(self, pattern: str, reason: str):
        super().__init__(f"Invalid glob pattern '{pattern}': {reason}")
        self.pattern = pattern
        self.reason = reason


class SearchPathNotFoundError(QueryInputError):
    """searchPath does not exist or lies outside every workspace root."""

    pass


class AmbiguousSearchPathError(QueryInputError):
    """A relative searchPath resolved inside more than one workspace root."""

    def __init__(self, search_path: str, candidates: List[str]):
        self.search_path = search_path
        self.candidates = sorted(candidates)
        super().__init__(
            f"searchPath is ambiguous across workspaces ({', '.join(self.candidates)}). "
            f"Use WorkspaceName/... form."
        )


class EngineCommandError(QgrepIndexerError):
    """The engine exited non-zero or reported an Error line on stderr."""

    pass


class EngineUnavailableError(QgrepIndexerError):
    """The engine binary is missing."""

    pass


class NoWorkspaceError(QgrepIndexerError):
    """No workspace roots are open."""

    def __init__(self, message: str = "No workspace folders are open."):
        super().__init__(message)


class NotInitializedError(QgrepIndexerError):
    """The targeted workspace(s) have no index yet."""

    def __init__(self, workspace_name: Optional[str] = None):
        if workspace_name:
            message = (
                f"Workspace '{workspace_name}' is not initialized for qgrep. "
                f"{INIT_COMMAND_HINT}"
            )
        else:
            message = f"No initialized qgrep workspace found. {INIT_COMMAND_HINT}"
        super().__init__(message)
        self.workspace_name = workspace_name


class InitTimeoutError(QgrepIndexerError):
    """Automatic initialization did not finish within the allowed wait."""

    def __init__(self, pending_workspaces: List[str], timeout_seconds: float):
        self.pending_workspaces = sorted(pending_workspaces)
        super().__init__(
            f"Timed out after {timeout_seconds:g}s waiting for qgrep index "
            f"initialization: {', '.join(self.pending_workspaces)}"
        )


class OperationCancelledError(QgrepIndexerError):
    """An index operation was cancelled by a concurrent clear or shutdown."""

    pass


class CommandSpawnError(QgrepIndexerError):
    """The engine process could not be launched."""

    pass
