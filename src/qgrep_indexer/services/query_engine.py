"""
Text and file search over the qgrep indexes of every workspace root.

A query is validated, its optional ``searchPath`` is resolved to one or more
target roots (with an engine path filter or a glob matcher), the engine is
run once per target, and the parsed results are merged, counted and sliced
to the caller's ceiling.
"""

import asyncio
import logging
import math
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import Config
from ..errors import (
    AmbiguousSearchPathError,
    EngineCommandError,
    NoWorkspaceError,
    NotInitializedError,
    QueryInputError,
    SearchPathNotFoundError,
)
from .command_runner import CommandResult, CommandRunner, extract_command_error
from .glob_matcher import (
    GLOB_SCOPE_ABSOLUTE,
    GLOB_SCOPE_RELATIVE,
    GlobMatcher,
    compile_glob,
    escape_engine_regex,
    has_glob_magic,
    normalize_glob,
)
from .index_orchestrator import IndexOrchestrator
from .workspace_state import (
    WorkspaceIndexState,
    WorkspaceStateStore,
    is_path_inside_root,
    normalize_for_comparison,
    normalize_slash,
)

logger = logging.getLogger(__name__)

CASE_SMART = "smart"
CASE_SENSITIVE = "sensitive"
CASE_INSENSITIVE = "insensitive"

FILE_SEARCH_MODES = {
    "path": "fp",
    "name": "fn",
    "components": "fs",
    "fuzzy": "ff",
}

MATCH_LINE_PATTERN = re.compile(r"^((?:[A-Za-z]:)?.+?):(\d+):(.*)$")
SEARCH_SUMMARY_PATTERN = re.compile(r"^Search complete, found (\d+)(\+)? match(?:es)? in\b")
# Fuzzy output may prefix each path with a relevance score.
FUZZY_TAB_SCORE_PATTERN = re.compile(r"^\s*\d+(?:\.\d+)?\t(.+)$")
FUZZY_SPACE_SCORE_PATTERN = re.compile(r"^\s*\d+(?:\.\d+)? (.+)$")
WINDOWS_ABSOLUTE_PATTERN = re.compile(r"^[A-Za-z]:[\\/]")
_LINE_SPLIT = re.compile(r"\r?\n")

RequestT = TypeVar("RequestT", bound="_SearchRequest")


class _SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    query: str
    search_path: Optional[str] = Field(default=None, alias="searchPath")
    max_results: Optional[int] = Field(default=None, alias="maxResults")
    case_mode: Literal["smart", "sensitive", "insensitive"] = Field(
        default=CASE_SMART, alias="caseMode"
    )

    @field_validator("query", mode="before")
    @classmethod
    def validate_query(cls, v: Any) -> str:
        if not isinstance(v, str):
            raise ValueError("query must be a string.")
        trimmed = v.strip()
        if not trimmed:
            raise ValueError("query must be a non-empty regex string.")
        return trimmed

    @field_validator("search_path", mode="before")
    @classmethod
    def validate_search_path(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        if not isinstance(v, str):
            raise ValueError("searchPath must be a string when provided.")
        trimmed = v.strip()
        if not trimmed:
            raise ValueError("searchPath must be a non-empty string when provided.")
        return trimmed

    @field_validator("max_results", mode="before")
    @classmethod
    def validate_max_results(cls, v: Any) -> Optional[int]:
        if v is None:
            return None
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("maxResults must be a number when provided.")
        if not math.isfinite(v):
            raise ValueError("maxResults must be an integer >= 1.")
        if v != int(v) or v < 1:
            raise ValueError("maxResults must be an integer >= 1.")
        return int(v)

    @classmethod
    def parse(cls: Type[RequestT], data: Union[RequestT, Mapping[str, Any]]) -> RequestT:
        """Validate raw tool input, raising QueryInputError on bad fields."""
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise QueryInputError(_validation_message(e)) from e


class TextSearchRequest(_SearchRequest):
    """Regex search over file contents."""


class FileSearchRequest(_SearchRequest):
    """File-name search in one of the engine's path modes."""

    mode: Literal["path", "name", "components", "fuzzy"] = "path"


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    message = str(first.get("msg", "invalid input"))
    if message.startswith("Value error, "):
        return message[len("Value error, ") :]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {message}" if location else message


@dataclass
class SearchTarget:
    """One root to query, optionally narrowed by a path filter or glob."""

    state: WorkspaceIndexState
    filter_regex: Optional[str] = None
    matcher: Optional[GlobMatcher] = None

    def accepts(self, absolute_path: Path) -> bool:
        if self.matcher is None:
            return True
        if self.matcher.scope == GLOB_SCOPE_ABSOLUTE:
            return self.matcher.matches(normalize_slash(absolute_path))
        relative = os.path.relpath(absolute_path, self.state.root_path)
        return self.matcher.matches(normalize_slash(relative))


@dataclass(frozen=True)
class ParsedMatch:
    absolute_path: Path
    line: int
    preview: str


def has_uppercase_literal(query: str) -> bool:
    """True if query has an uppercase letter outside a backslash escape."""
    i = 0
    while i < len(query):
        if query[i] == "\\":
            i += 2
            continue
        if query[i].isupper():
            return True
        i += 1
    return False


def resolve_case_sensitivity(query: str, case_mode: str) -> bool:
    if case_mode == CASE_SENSITIVE:
        return True
    if case_mode == CASE_INSENSITIVE:
        return False
    return has_uppercase_literal(query)


def is_absolute_path(text: str) -> bool:
    return os.path.isabs(text) or WINDOWS_ABSOLUTE_PATTERN.match(text) is not None


def resolve_output_path(root: Path, text: str) -> Path:
    candidate = text if os.path.isabs(text) else os.path.join(str(root), text)
    return Path(os.path.abspath(candidate))


def strip_fuzzy_score(line: str) -> str:
    """
    Remove a leading relevance score from a fuzzy-mode output line.

    A score followed by a TAB is always stripped. A score followed by a single
    space is stripped only when what follows is an absolute path, so relative
    names that start with digits are kept intact.

    Examples:
        >>> strip_fuzzy_score("42\\tsrc/main.py")
        'src/main.py'
        >>> strip_fuzzy_score("2024 notes.txt")
        '2024 notes.txt'
    """
    match = FUZZY_TAB_SCORE_PATTERN.match(line)
    if match:
        return match.group(1)
    match = FUZZY_SPACE_SCORE_PATTERN.match(line)
    if match and is_absolute_path(match.group(1)):
        return match.group(1)
    return line


def parse_search_output(stdout: str, root: Path) -> Tuple[List[ParsedMatch], bool]:
    """
    Parse ``search`` output.

    Returns:
        (matches, truncated) where truncated is True when the engine's summary
        line reported ``N+`` matches
    """
    matches: List[ParsedMatch] = []
    truncated = False
    for raw_line in _LINE_SPLIT.split(stdout):
        line = raw_line.rstrip("\r")
        if not line.strip():
            continue
        summary = SEARCH_SUMMARY_PATTERN.match(line.strip())
        if summary:
            truncated = truncated or bool(summary.group(2))
            continue
        parsed = MATCH_LINE_PATTERN.match(line)
        if not parsed:
            continue
        path_text, line_text, preview = parsed.groups()
        line_number = int(line_text)
        if line_number <= 0:
            continue
        absolute = resolve_output_path(root, path_text)
        if not is_path_inside_root(root, absolute):
            logger.debug(f"Dropping qgrep match outside {root}: {path_text}")
            continue
        matches.append(ParsedMatch(absolute, line_number, preview))
    return matches, truncated


def parse_files_output(stdout: str, root: Path, fuzzy: bool = False) -> Tuple[List[Path], int]:
    """
    Parse ``files`` output.

    Returns:
        (deduplicated paths inside root, number of non-empty output lines)
    """
    paths: List[Path] = []
    seen = set()
    raw_count = 0
    for raw_line in _LINE_SPLIT.split(stdout):
        line = raw_line.rstrip("\r")
        if not line.strip():
            continue
        raw_count += 1
        text = strip_fuzzy_score(line) if fuzzy else line
        absolute = resolve_output_path(root, text)
        if not is_path_inside_root(root, absolute):
            continue
        key = normalize_for_comparison(absolute)
        if key in seen:
            continue
        seen.add(key)
        paths.append(absolute)
    return paths, raw_count


def workspace_payload(state: WorkspaceIndexState, absolute_path: Path) -> Dict[str, Any]:
    relative = normalize_slash(os.path.relpath(absolute_path, state.root_path))
    workspace_path = state.name if relative == "." else f"{state.name}/{relative}"
    return {
        "absolutePath": normalize_slash(absolute_path),
        "workspacePath": workspace_path,
        "workspaceFolder": state.name,
    }


def build_filter_regex(root: Path, absolute_path: Path) -> Optional[str]:
    """Engine ``fi`` regex limiting results to a file or directory."""
    if normalize_for_comparison(root) == normalize_for_comparison(absolute_path):
        return None
    escaped = escape_engine_regex(normalize_slash(absolute_path))
    if absolute_path.is_dir():
        return f"^{escaped}(/|$)"
    return f"^{escaped}$"


class QueryEngine:
    """Runs text and file searches across workspace roots."""

    def __init__(
        self,
        config: Config,
        store: WorkspaceStateStore,
        orchestrator: IndexOrchestrator,
        runner: Optional[CommandRunner] = None,
    ):
        self.config = config
        self.store = store
        self.orchestrator = orchestrator
        self.runner = runner or orchestrator.runner

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def search_text(
        self, request: Union[TextSearchRequest, Mapping[str, Any]]
    ) -> Dict[str, Any]:
        """Regex search; returns matches plus count/totalAvailable/capped."""
        parsed = TextSearchRequest.parse(request)
        max_results, requested = self.apply_ceiling(parsed.max_results)
        case_sensitive = resolve_case_sensitivity(parsed.query, parsed.case_mode)
        targets = self.resolve_targets(parsed.search_path)
        await self._ensure_ready(targets)

        limit = self.config.search.engine_output_limit
        per_target = await asyncio.gather(
            *(self._search_target(target, parsed.query, case_sensitive, limit) for target in targets)
        )

        collected: List[Dict[str, Any]] = []
        truncated = False
        for target, (matches, target_truncated) in zip(targets, per_target):
            truncated = truncated or target_truncated
            for match in matches:
                payload = workspace_payload(target.state, match.absolute_path)
                payload["line"] = match.line
                payload["preview"] = match.preview
                collected.append(payload)

        response: Dict[str, Any] = {
            "query": parsed.query,
            "searchPath": parsed.search_path,
            "maxResults": max_results,
            "caseModeApplied": CASE_SENSITIVE if case_sensitive else CASE_INSENSITIVE,
            "count": min(len(collected), max_results),
            "totalAvailable": len(collected),
            "capped": truncated or len(collected) > max_results,
            "matches": collected[:max_results],
        }
        if requested is not None:
            response["requestedMaxResults"] = requested
        return response

    async def search_files(
        self, request: Union[FileSearchRequest, Mapping[str, Any]]
    ) -> Dict[str, Any]:
        """File search in path / name / components / fuzzy mode."""
        parsed = FileSearchRequest.parse(request)
        max_results, requested = self.apply_ceiling(parsed.max_results)
        case_sensitive = resolve_case_sensitivity(parsed.query, parsed.case_mode)
        targets = self.resolve_targets(parsed.search_path)
        await self._ensure_ready(targets)

        limit = self.config.search.engine_output_limit
        per_target = await asyncio.gather(
            *(
                self._files_target(target, parsed.query, parsed.mode, case_sensitive, limit)
                for target in targets
            )
        )

        collected: List[Dict[str, Any]] = []
        seen = set()
        truncated = False
        for target, (paths, target_truncated) in zip(targets, per_target):
            truncated = truncated or target_truncated
            for path in paths:
                key = normalize_for_comparison(path)
                if key in seen:
                    continue
                seen.add(key)
                collected.append(workspace_payload(target.state, path))

        response: Dict[str, Any] = {
            "query": parsed.query,
            "mode": parsed.mode,
            "searchPath": parsed.search_path,
            "maxResults": max_results,
            "caseModeApplied": CASE_SENSITIVE if case_sensitive else CASE_INSENSITIVE,
            "count": min(len(collected), max_results),
            "totalAvailable": len(collected),
            "capped": truncated or len(collected) > max_results,
            "files": collected[:max_results],
        }
        if requested is not None:
            response["requestedMaxResults"] = requested
        return response

    def apply_ceiling(self, requested: Optional[int]) -> Tuple[int, Optional[int]]:
        """Return (applied ceiling, original request if it was clamped)."""
        if requested is None:
            return self.config.search.default_max_results, None
        limit = self.config.search.max_results_limit
        if requested > limit:
            return limit, requested
        return requested, None

    # ------------------------------------------------------------------
    # Scope resolution
    # ------------------------------------------------------------------

    def resolve_targets(self, search_path: Optional[str]) -> List[SearchTarget]:
        """Map an optional searchPath to the roots (and filters) to query.

        Raises:
            NoWorkspaceError: If no roots are open
            QueryInputError: If the path is missing, ambiguous or a bad glob
        """
        states = self.store.all()
        if not states:
            raise NoWorkspaceError()
        if search_path is None:
            return [SearchTarget(state) for state in self._default_states()]

        normalized = normalize_glob(search_path)
        if has_glob_magic(normalized):
            return self._resolve_glob(normalized)
        return [self._resolve_path(search_path)]

    def _default_states(self) -> List[WorkspaceIndexState]:
        # With nothing initialized yet, every root is a candidate for auto-init.
        return self.store.initialized() or self.store.all()

    def _resolve_glob(self, pattern: str) -> List[SearchTarget]:
        if is_absolute_path(pattern) or pattern.startswith("/"):
            matcher = compile_glob(pattern, GLOB_SCOPE_ABSOLUTE)
            return [SearchTarget(state, matcher=matcher) for state in self._default_states()]

        head, _, rest = pattern.partition("/")
        state = self.store.get_by_name(head) if rest and not has_glob_magic(head) else None
        if state is not None:
            matcher = compile_glob(rest, GLOB_SCOPE_RELATIVE)
            return [SearchTarget(state, matcher=matcher)]

        matcher = compile_glob(pattern, GLOB_SCOPE_RELATIVE)
        return [SearchTarget(state, matcher=matcher) for state in self._default_states()]

    def _resolve_path(self, search_path: str) -> SearchTarget:
        if is_absolute_path(search_path):
            absolute = Path(os.path.abspath(search_path))
            if not absolute.exists():
                raise SearchPathNotFoundError(f"searchPath does not exist: {search_path}")
            state = self.store.find_for_path(absolute)
            if state is None:
                raise SearchPathNotFoundError(
                    f"searchPath is outside current workspaces: {search_path}"
                )
            return self._path_target(state, absolute)

        prefixed = self._split_workspace_prefix(search_path)
        if prefixed is not None:
            state, remainder = prefixed
            absolute = Path(os.path.abspath(state.root_path / remainder))
            if not is_path_inside_root(state.root_path, absolute):
                raise SearchPathNotFoundError(
                    f"searchPath resolves outside workspace '{state.name}': {search_path}"
                )
            if not absolute.exists():
                raise SearchPathNotFoundError(f"searchPath does not exist: {search_path}")
            return self._path_target(state, absolute)

        candidates: List[Tuple[WorkspaceIndexState, Path]] = []
        for state in self.store.all():
            absolute = Path(os.path.abspath(state.root_path / search_path))
            if is_path_inside_root(state.root_path, absolute) and absolute.exists():
                candidates.append((state, absolute))

        if not candidates:
            raise SearchPathNotFoundError(
                f"searchPath was not found in current workspaces: {search_path}"
            )
        if len(candidates) > 1:
            raise AmbiguousSearchPathError(search_path, [state.name for state, _ in candidates])
        state, absolute = candidates[0]
        return self._path_target(state, absolute)

    def _split_workspace_prefix(
        self, search_path: str
    ) -> Optional[Tuple[WorkspaceIndexState, str]]:
        normalized = normalize_slash(search_path).lstrip("/")
        if not normalized:
            return None
        head, _, rest = normalized.partition("/")
        state = self.store.get_by_name(head)
        if state is None:
            return None
        return state, rest.lstrip("/") or "."

    @staticmethod
    def _path_target(state: WorkspaceIndexState, absolute: Path) -> SearchTarget:
        return SearchTarget(state, filter_regex=build_filter_regex(state.root_path, absolute))

    async def _ensure_ready(self, targets: List[SearchTarget]) -> None:
        pending = [target.state for target in targets if not target.state.is_initialized]
        if not pending:
            return
        if not self.config.search.auto_init_on_query:
            if len(targets) == 1:
                raise NotInitializedError(pending[0].name)
            raise NotInitializedError()
        await self.orchestrator.wait_until_ready(pending)

    # ------------------------------------------------------------------
    # Engine calls
    # ------------------------------------------------------------------

    async def _search_target(
        self, target: SearchTarget, query: str, case_sensitive: bool, limit: int
    ) -> Tuple[List[ParsedMatch], bool]:
        state = target.state
        args = ["search", str(state.config_path)]
        if target.filter_regex:
            args.append(f"fi{target.filter_regex}")
        if not case_sensitive:
            args.append("i")
        args.extend([f"L{limit}", "S", query])

        result = await self._run_query(state, args, "Search")
        matches, truncated = parse_search_output(result.stdout, state.root_path)
        if len(matches) >= limit:
            truncated = True
        if target.matcher is not None:
            matches = [match for match in matches if target.accepts(match.absolute_path)]
        return matches, truncated

    async def _files_target(
        self,
        target: SearchTarget,
        query: str,
        mode: str,
        case_sensitive: bool,
        limit: int,
    ) -> Tuple[List[Path], bool]:
        state = target.state
        args = ["files", str(state.config_path)]
        if target.filter_regex:
            args.append(f"fi{target.filter_regex}")
        if not case_sensitive:
            args.append("i")
        args.extend([f"L{limit}", FILE_SEARCH_MODES[mode], query])

        result = await self._run_query(state, args, "File search")
        paths, raw_count = parse_files_output(
            result.stdout, state.root_path, fuzzy=(mode == "fuzzy")
        )
        if target.matcher is not None:
            paths = [path for path in paths if target.accepts(path)]
        return paths, raw_count >= limit

    async def _run_query(
        self, state: WorkspaceIndexState, args: List[str], purpose: str
    ) -> CommandResult:
        binary_path = self.orchestrator.require_binary()
        logger.debug(f"Running qgrep {args[0]} for '{state.name}'")
        result = await self.runner.run(binary_path, args, state.root_path)
        error = extract_command_error(result, f"{purpose} failed for workspace '{state.name}'.")
        if error:
            raise EngineCommandError(error)
        return result
