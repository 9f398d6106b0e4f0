"""Log file locations under the .qgrep-indexer directory."""

import logging
from pathlib import Path

LOG_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_debug_log_path(config_dir: Path, log_name: str) -> Path:
    """
    Get path for a log file within .qgrep-indexer/.tmp, creating the directory.

    Args:
        config_dir: Path to the .qgrep-indexer configuration directory
        log_name: Name of the log file (e.g., 'watch.log')
    """
    tmp_dir = config_dir / ".tmp"
    tmp_dir.mkdir(parents=True, exist_ok=True)
    return tmp_dir / log_name


def attach_file_log(log_path: Path, level: int = logging.INFO) -> logging.Handler:
    """Send qgrep_indexer log records to log_path. Returns the handler for removal."""
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FILE_FORMAT))
    package_logger = logging.getLogger("qgrep_indexer")
    package_logger.addHandler(handler)
    previous = package_logger.getEffectiveLevel()
    if previous > level:
        # Console handlers keep their old threshold.
        for root_handler in logging.getLogger().handlers:
            if root_handler.level < previous:
                root_handler.setLevel(previous)
        package_logger.setLevel(level)
    return handler


def detach_file_log(handler: logging.Handler) -> None:
    logging.getLogger("qgrep_indexer").removeHandler(handler)
    handler.close()
