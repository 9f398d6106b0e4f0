"""Configuration management for qgrep-indexer."""

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)


DEFAULT_SHADER_EXTENSIONS = [
    "hlsl",
    "hlsli",
    "fx",
    "fxh",
    "usf",
    "ush",
    "glsl",
    "vert",
    "frag",
    "comp",
    "shader",
    "cginc",
    "compute",
]

DEFAULT_SCRIPT_EXTENSIONS = [
    "py",
    "lua",
    "js",
    "ts",
    "cs",
    "sh",
    "ps1",
    "bat",
    "cmd",
]

# Directory names excluded from every index regardless of user ignore patterns.
DEFAULT_BASELINE_EXCLUDES = [
    ".git",
    ".svn",
    ".hg",
    ".vs",
    ".idea",
    "node_modules",
    "__pycache__",
    ".cache",
]


class TimingConfig(BaseModel):
    """Debounce, restart and wait intervals (seconds)."""

    watch_restart_delay: float = Field(
        default=1.0, description="Delay before restarting an exited watch process"
    )
    file_event_debounce: float = Field(
        default=2.0,
        description="Quiet period after file create/delete events before an update",
    )
    ignore_resync_debounce: float = Field(
        default=0.5,
        description="Quiet period after an ignore-pattern change before a resync",
    )
    init_wait_timeout: float = Field(
        default=120.0,
        description="Maximum time a query waits for automatic initialization",
    )
    init_poll_interval: float = Field(
        default=0.25, description="Polling interval while waiting for initialization"
    )

    @model_validator(mode="after")
    def check_positive(self) -> "TimingConfig":
        for name in (
            "watch_restart_delay",
            "file_event_debounce",
            "ignore_resync_debounce",
            "init_wait_timeout",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.init_poll_interval <= 0:
            raise ValueError("init_poll_interval must be positive")
        return self


class SearchConfig(BaseModel):
    """Result ceilings applied to queries."""

    default_max_results: int = Field(
        default=200, description="Result ceiling when the caller gives none"
    )
    max_results_limit: int = Field(
        default=1000, description="Hard maximum for a caller-supplied ceiling"
    )
    engine_output_limit: int = Field(
        default=5000, description="Output cap passed to the engine (L<limit>)"
    )
    auto_init_on_query: bool = Field(
        default=True,
        description="Initialize uninitialized roots on demand when queried",
    )

    @model_validator(mode="after")
    def check_limits(self) -> "SearchConfig":
        if self.default_max_results < 1:
            raise ValueError("default_max_results must be >= 1")
        if self.max_results_limit < self.default_max_results:
            raise ValueError("max_results_limit must be >= default_max_results")
        if self.engine_output_limit < self.max_results_limit:
            raise ValueError("engine_output_limit must be >= max_results_limit")
        return self


def enabled_globs(patterns: Dict[str, Any]) -> List[str]:
    """Keep the globs of an ignore map whose value is exactly True."""
    return [pattern for pattern, value in patterns.items() if value is True]


class Config(BaseModel):
    """Main configuration for qgrep-indexer."""

    binary_path: str = Field(
        default="qgrep", description="qgrep executable (name on PATH or a path)"
    )
    index_dir_name: str = Field(
        default=".vscode/qgrep",
        description="Index directory, relative to each workspace root",
    )
    config_file_name: str = Field(
        default="workspace.cfg", description="Engine descriptor file name"
    )
    shader_extensions: List[str] = Field(default=list(DEFAULT_SHADER_EXTENSIONS))
    script_extensions: List[str] = Field(default=list(DEFAULT_SCRIPT_EXTENSIONS))
    baseline_excludes: List[str] = Field(default=list(DEFAULT_BASELINE_EXCLUDES))
    # Editor-style {glob: enabled}; only entries whose value is exactly true apply.
    ignore_patterns: Dict[str, Any] = Field(default_factory=dict)
    timing: TimingConfig = Field(default_factory=TimingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)

    @field_validator("shader_extensions", "script_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        """Remove dots, lowercase and de-duplicate extensions."""
        seen: List[str] = []
        for ext in v:
            normalized = ext.strip().lstrip(".").lower()
            if normalized and normalized not in seen:
                seen.append(normalized)
        return seen

    @field_validator("index_dir_name")
    @classmethod
    def validate_index_dir(cls, v: str) -> str:
        normalized = v.replace("\\", "/").strip("/")
        if not normalized or ".." in normalized.split("/"):
            raise ValueError(f"index_dir_name must stay inside the workspace: {v!r}")
        return normalized

    def resolve_binary_path(self) -> Path:
        """Resolve binary_path through PATH when it is a bare executable name."""
        candidate = Path(self.binary_path).expanduser()
        if candidate.is_absolute() or len(candidate.parts) > 1:
            return candidate
        found = shutil.which(self.binary_path)
        return Path(found) if found else candidate


class ConfigManager:
    """Manages configuration loading, saving, and validation."""

    DEFAULT_CONFIG_PATH = Path(".qgrep-indexer/config.json")

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self._config: Optional[Config] = None

    def load(self) -> Config:
        """Load configuration from file, or defaults when no file exists."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                self._config = Config(**data)
            except Exception as e:
                raise ValueError(f"Failed to load config from {self.config_path}: {e}")
        else:
            self._config = Config()

        return self._config

    def save(self, config: Optional[Config] = None) -> None:
        """Save configuration as sorted, indented JSON."""
        if config is None:
            config = self.get_config()
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(config.model_dump(mode="json"), f, indent=2, sort_keys=True)
        self._config = config

    def get_config(self) -> Config:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            self.load()
        if self._config is None:
            raise RuntimeError("Failed to load configuration")
        return self._config

    def update_config(self, **kwargs: Any) -> Config:
        """Update configuration with new values."""
        config_dict = self.get_config().model_dump()
        config_dict.update(kwargs)
        new_config = Config(**config_dict)
        self.save(new_config)
        return new_config

    @staticmethod
    def find_config_path(start_dir: Optional[Path] = None) -> Optional[Path]:
        """Find .qgrep-indexer/config.json by walking up the directory tree.

        Args:
            start_dir: Directory to start searching from (default: current directory)

        Returns:
            Path to config.json if found, None otherwise
        """
        current = (start_dir or Path.cwd()).resolve()
        for path in [current] + list(current.parents):
            config_path = path / ".qgrep-indexer" / "config.json"
            if config_path.exists():
                return config_path
        return None

    @classmethod
    def create_with_backtrack(cls, start_dir: Optional[Path] = None) -> "ConfigManager":
        """Create ConfigManager by finding config through directory backtracking.

        Falls back to ``<start_dir>/.qgrep-indexer/config.json`` when nothing is
        found on the way up.
        """
        config_path = cls.find_config_path(start_dir)
        if config_path is None:
            start = start_dir or Path.cwd()
            config_path = start / ".qgrep-indexer" / "config.json"
        return cls(config_path)
