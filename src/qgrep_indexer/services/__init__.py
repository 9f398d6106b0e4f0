"""Core services: engine subprocesses, index orchestration, queries, status."""

from .qgrep_service import CommandSummary, QgrepService
from .workspace_state import WorkspaceRoot

__all__ = ["CommandSummary", "QgrepService", "WorkspaceRoot"]
