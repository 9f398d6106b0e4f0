"""
Shared pytest fixtures for qgrep-indexer tests.

Provides a fake qgrep binary on disk, a configuration with short timers,
workspace root factories and the in-memory command runner.
"""

from pathlib import Path
from typing import Callable

import pytest

from qgrep_indexer.config import Config, SearchConfig, TimingConfig
from qgrep_indexer.services.workspace_state import WorkspaceRoot

from tests.shared.fake_command_runner import FakeCommandRunner


@pytest.fixture
def fake_binary(tmp_path: Path) -> Path:
    """An existing file standing in for the qgrep executable."""
    binary = tmp_path / "bin" / "qgrep"
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text("", encoding="utf-8")
    return binary


@pytest.fixture
def fast_config(fake_binary: Path) -> Config:
    """Configuration with millisecond-scale timers for async tests."""
    return Config(
        binary_path=str(fake_binary),
        timing=TimingConfig(
            watch_restart_delay=0.02,
            file_event_debounce=0.05,
            ignore_resync_debounce=0.02,
            init_wait_timeout=2.0,
            init_poll_interval=0.01,
        ),
        search=SearchConfig(engine_output_limit=5000),
    )


@pytest.fixture
def fake_runner() -> FakeCommandRunner:
    return FakeCommandRunner()


@pytest.fixture
def make_root(tmp_path: Path) -> Callable[..., WorkspaceRoot]:
    """Factory creating a workspace directory and its WorkspaceRoot."""

    def _make(name: str, initialized: bool = False, index_dir: str = ".vscode/qgrep") -> WorkspaceRoot:
        path = tmp_path / "workspaces" / name
        path.mkdir(parents=True, exist_ok=True)
        if initialized:
            config_path = path / index_dir / "workspace.cfg"
            config_path.parent.mkdir(parents=True, exist_ok=True)
            config_path.write_text("# qgrep workspace\npath .\n", encoding="utf-8")
        return WorkspaceRoot(name=name, path=path)

    return _make
