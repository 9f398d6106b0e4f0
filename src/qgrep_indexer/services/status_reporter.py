"""Status snapshots for every workspace root plus a workspace-wide aggregate."""

from typing import Any, Dict, List

from .index_orchestrator import IndexOrchestrator
from .workspace_state import IndexProgress, WorkspaceIndexState, WorkspaceStateStore


def workspace_status(
    state: WorkspaceIndexState, orchestrator: IndexOrchestrator
) -> Dict[str, Any]:
    """Status of one root; progress is unknown until the root is initialized."""
    initialized = state.is_initialized
    progress = state.progress if initialized else IndexProgress(indexing=state.progress.indexing)
    status: Dict[str, Any] = {
        "workspaceName": state.name,
        "rootPath": str(state.root_path),
        "initialized": initialized,
        "watching": state.is_watching,
        "phase": orchestrator.get_phase(state).value,
    }
    status.update(progress.to_dict())
    return status


def aggregate_progress(statuses: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Combine per-root progress into one figure.

    If every initialized root knows its total, counts are summed and a single
    percentage derived from them. Otherwise available percentages are
    averaged. With nothing to go on the aggregate stays unknown.
    """
    initialized = [status for status in statuses if status["initialized"]]
    aggregate: Dict[str, Any] = {
        "indexedFiles": None,
        "totalFiles": None,
        "remainingFiles": None,
        "progressPercent": None,
        "progressKnown": False,
        "indexing": any(status["indexing"] for status in statuses),
    }
    if not initialized:
        return aggregate

    if all(status["progressKnown"] and status["totalFiles"] is not None for status in initialized):
        indexed = sum(status["indexedFiles"] or 0 for status in initialized)
        total = sum(status["totalFiles"] for status in initialized)
        aggregate.update(
            indexedFiles=indexed,
            totalFiles=total,
            remainingFiles=max(total - indexed, 0),
            progressPercent=100 if total == 0 else min(100, round(indexed * 100 / total)),
            progressKnown=True,
        )
        return aggregate

    percents = [
        status["progressPercent"]
        for status in initialized
        if status["progressPercent"] is not None
    ]
    if percents:
        aggregate["progressPercent"] = round(sum(percents) / len(percents))
    return aggregate


class StatusReporter:
    """Builds the status summary shown by ``qgrep-indexer status``."""

    def __init__(self, store: WorkspaceStateStore, orchestrator: IndexOrchestrator):
        self.store = store
        self.orchestrator = orchestrator

    def workspace_statuses(self) -> List[Dict[str, Any]]:
        statuses = [workspace_status(state, self.orchestrator) for state in self.store.all()]
        return sorted(statuses, key=lambda status: status["workspaceName"].lower())

    def summary(self) -> Dict[str, Any]:
        statuses = self.workspace_statuses()
        return {
            "binaryPath": str(self.orchestrator.binary_path),
            "binaryAvailable": self.orchestrator.binary_available(),
            "totalWorkspaces": len(statuses),
            "initializedWorkspaces": sum(1 for status in statuses if status["initialized"]),
            "watchingWorkspaces": sum(1 for status in statuses if status["watching"]),
            "workspaceStatuses": statuses,
            "aggregate": aggregate_progress(statuses),
        }
