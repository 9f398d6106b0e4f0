"""Tests for per-root status and the aggregate progress figure."""

import pytest
import pytest_asyncio

from qgrep_indexer.services.command_runner import ProgressFrame
from qgrep_indexer.services.index_orchestrator import IndexOrchestrator
from qgrep_indexer.services.status_reporter import StatusReporter, aggregate_progress
from qgrep_indexer.services.workspace_state import WorkspaceStateStore

from tests.shared.async_helpers import wait_until


def status(initialized=True, indexed=None, total=None, percent=None, indexing=False):
    return {
        "initialized": initialized,
        "indexedFiles": indexed,
        "totalFiles": total,
        "remainingFiles": None if total is None else total - (indexed or 0),
        "progressPercent": percent,
        "progressKnown": total is not None,
        "indexing": indexing,
    }


class TestAggregateProgress:
    def test_sums_when_all_totals_known(self):
        aggregate = aggregate_progress(
            [status(indexed=10, total=10, percent=100), status(indexed=5, total=30, percent=16)]
        )
        assert aggregate == {
            "indexedFiles": 15,
            "totalFiles": 40,
            "remainingFiles": 25,
            "progressPercent": 38,
            "progressKnown": True,
            "indexing": False,
        }

    def test_averages_percentages_when_a_total_is_unknown(self):
        aggregate = aggregate_progress(
            [status(indexed=10, total=10, percent=100), status(indexed=3, percent=40, indexing=True)]
        )
        assert aggregate["progressPercent"] == 70
        assert aggregate["progressKnown"] is False
        assert aggregate["totalFiles"] is None
        assert aggregate["indexing"] is True

    def test_unknown_without_data(self):
        aggregate = aggregate_progress([status(), status(initialized=False, percent=50)])
        assert aggregate["progressPercent"] is None
        assert aggregate["progressKnown"] is False

    def test_zero_files_is_complete(self):
        assert aggregate_progress([status(indexed=0, total=0, percent=100)])["progressPercent"] == 100

    def test_no_roots(self):
        assert aggregate_progress([])["progressKnown"] is False


class TestStatusReporter:
    @pytest_asyncio.fixture
    async def reporter(self, fast_config, fake_runner):
        store = WorkspaceStateStore(fast_config.index_dir_name, fast_config.config_file_name)
        orchestrator = IndexOrchestrator(fast_config, store, fake_runner)
        yield StatusReporter(store, orchestrator)
        await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_summary(self, reporter, make_root, fast_config):
        beta = make_root("beta", initialized=True)
        alpha = make_root("Alpha")
        await reporter.orchestrator.start([beta, alpha])
        beta_state = reporter.store.get(beta)
        await wait_until(lambda: beta_state.is_watching)
        beta_state.progress.apply_frame(ProgressFrame(100, 12))
        # Numbers left over on an uninitialized root are not reported.
        reporter.store.get(alpha).progress.apply_frame(ProgressFrame(50, 4))

        summary = reporter.summary()

        assert summary["binaryPath"] == fast_config.binary_path
        assert summary["binaryAvailable"] is True
        assert summary["totalWorkspaces"] == 2
        assert summary["initializedWorkspaces"] == 1
        assert summary["watchingWorkspaces"] == 1
        names = [entry["workspaceName"] for entry in summary["workspaceStatuses"]]
        assert names == ["Alpha", "beta"]

        alpha_status, beta_status = summary["workspaceStatuses"]
        assert alpha_status["phase"] == "uninitialized"
        assert alpha_status["indexedFiles"] is None
        assert alpha_status["watching"] is False
        assert beta_status["phase"] == "ready"
        assert beta_status["totalFiles"] == 12
        assert beta_status["watching"] is True
        assert beta_status["rootPath"] == str(beta.path)

        assert summary["aggregate"]["totalFiles"] == 12
        assert summary["aggregate"]["progressKnown"] is True
