"""
Managed regions of the qgrep workspace descriptor.

The descriptor (``workspace.cfg``) is a line-oriented file that users may edit.
Three blocks inside it belong to qgrep-indexer and are regenerated wholesale
on every sync::

    # BEGIN qgrep-indexer shader includes
    include \\.(fx|hlsl|usf)$
    # END qgrep-indexer shader includes

Everything outside the markers is left untouched, and the file's line ending
style is preserved.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from ..config import Config, enabled_globs
from .glob_matcher import escape_engine_regex, ignore_glob_to_engine_regex

logger = logging.getLogger(__name__)

MARKER_OWNER = "qgrep-indexer"
REGION_SHADER_INCLUDES = "shader includes"
REGION_SCRIPT_INCLUDES = "script includes"
REGION_EXCLUDES = "excludes"
MANAGED_REGIONS = (REGION_SHADER_INCLUDES, REGION_SCRIPT_INCLUDES, REGION_EXCLUDES)

IgnorePatternsProvider = Callable[[], Dict[str, Any]]


def begin_marker(region: str) -> str:
    return f"# BEGIN {MARKER_OWNER} {region}"


def end_marker(region: str) -> str:
    return f"# END {MARKER_OWNER} {region}"


def extension_include_rules(extensions: Iterable[str]) -> List[str]:
    """One ``include`` rule matching any of the extensions (none if empty)."""
    escaped = sorted({escape_engine_regex(ext) for ext in extensions if ext})
    if not escaped:
        return []
    return ["include \\.(" + "|".join(escaped) + ")$"]


def exclude_rules(baseline_dirs: Iterable[str], ignore_globs: Iterable[str]) -> List[str]:
    """Baseline directory excludes merged with converted ignore globs.

    Globs the engine dialect cannot express are skipped. The result is
    de-duplicated and sorted so unchanged inputs give identical output.
    """
    fragments: Set[str] = set()
    for name in baseline_dirs:
        cleaned = name.replace("\\", "/").strip("/")
        if cleaned:
            fragments.add("(^|/)" + escape_engine_regex(cleaned) + "(/|$)")
    for glob in ignore_globs:
        fragment = ignore_glob_to_engine_regex(glob)
        if fragment is None:
            logger.info(f"Ignore pattern '{glob}' cannot be expressed as a qgrep exclude rule; skipped")
            continue
        fragments.add(fragment)
    return [f"exclude {fragment}" for fragment in sorted(fragments)]


def replace_region(lines: List[str], region: str, body: List[str]) -> List[str]:
    """Replace (or append) one managed region in a list of lines."""
    begin = begin_marker(region)
    end = end_marker(region)
    block = [begin, *body, end]

    begins = [i for i, line in enumerate(lines) if line.strip() == begin]
    ends = [i for i, line in enumerate(lines) if line.strip() == end]

    if not begins and not ends:
        return lines + block
    if len(begins) == 1 and len(ends) == 1 and begins[0] < ends[0]:
        return lines[: begins[0]] + block + lines[ends[0] + 1 :]

    logger.warning(
        f"Malformed managed region '{region}' in qgrep config "
        f"({len(begins)} BEGIN / {len(ends)} END markers); appending a fresh block"
    )
    drop: Set[int] = set(begins) | set(ends)
    open_index: Optional[int] = None
    for i, line in enumerate(lines):
        stripped = line.strip()
        if stripped == begin:
            open_index = i
        elif stripped == end and open_index is not None:
            drop.update(range(open_index, i + 1))
            open_index = None
    kept = [line for i, line in enumerate(lines) if i not in drop]
    return kept + block


def apply_managed_regions(text: str, bodies: Dict[str, List[str]]) -> str:
    """Rewrite every managed region of a descriptor's text."""
    newline = "\r\n" if "\r\n" in text else "\n"
    lines = text.splitlines()
    for region in MANAGED_REGIONS:
        lines = replace_region(lines, region, bodies.get(region, []))
    return newline.join(lines) + newline


class ManagedConfigWriter:
    """Computes managed region bodies and writes them into a descriptor."""

    def __init__(
        self,
        config: Config,
        ignore_patterns_provider: Optional[IgnorePatternsProvider] = None,
    ):
        self.config = config
        self._ignore_patterns_provider = ignore_patterns_provider or (
            lambda: config.ignore_patterns
        )

    def enabled_ignore_globs(self) -> List[str]:
        return enabled_globs(self._ignore_patterns_provider() or {})

    def build_bodies(self) -> Dict[str, List[str]]:
        baseline = [*self.config.baseline_excludes, self.config.index_dir_name]
        return {
            REGION_SHADER_INCLUDES: extension_include_rules(self.config.shader_extensions),
            REGION_SCRIPT_INCLUDES: extension_include_rules(self.config.script_extensions),
            REGION_EXCLUDES: exclude_rules(baseline, self.enabled_ignore_globs()),
        }

    def sync(self, config_path: Path) -> bool:
        """Rewrite the managed regions of config_path.

        Returns:
            True if the file content changed, False if it was already current
            or does not exist
        """
        if not config_path.exists():
            logger.debug(f"Skipping managed config sync, {config_path} does not exist")
            return False

        with open(config_path, "r", encoding="utf-8", newline="") as f:
            original = f.read()
        updated = apply_managed_regions(original, self.build_bodies())
        if updated == original:
            return False

        with open(config_path, "w", encoding="utf-8", newline="") as f:
            f.write(updated)
        logger.info(f"Updated managed regions in {config_path}")
        return True
