"""
Glob compiler for search-path scoping and ignore-pattern conversion.

Two entry points:

- ``compile_glob`` turns a glob (``*``, ``?``, ``**``, ``[...]``, ``{a,b}``)
  into an anchored Python regular expression, used to filter engine output
  against a workspace-relative or absolute search path.
- ``ignore_glob_to_engine_regex`` turns an editor ignore glob (``*``, ``?``,
  ``**`` and ``/`` only) into a fragment of qgrep's own regex dialect for
  ``exclude`` lines in the workspace descriptor.
"""

import re
import sys
from dataclasses import dataclass
from typing import List, Optional, Pattern, Tuple

from ..errors import GlobPatternError

IS_WINDOWS = sys.platform == "win32"

GLOB_SCOPE_RELATIVE = "relative"
GLOB_SCOPE_ABSOLUTE = "absolute"

# Characters that need a backslash in qgrep's regex dialect.
_ENGINE_REGEX_SPECIAL = frozenset(".^$|()[]{}+*?\\")
_GLOB_MAGIC = frozenset("*?[{")


@dataclass(frozen=True)
class GlobMatcher:
    """A compiled glob bound to its scope."""

    pattern: str
    scope: str
    regex: Pattern[str]
    windows: bool = IS_WINDOWS

    def matches(self, path: str) -> bool:
        """Check a workspace-relative or absolute path, depending on scope."""
        candidate = normalize_glob(path, windows=self.windows)
        if self.scope == GLOB_SCOPE_RELATIVE:
            candidate = candidate.lstrip("/")
        return self.regex.match(candidate) is not None


def normalize_glob(pattern: str, windows: bool = IS_WINDOWS) -> str:
    """Collapse separator runs and strip a leading ``./``.

    On Windows hosts backslashes are path separators; elsewhere they stay
    escape characters.
    """
    text = pattern.strip()
    if windows:
        text = text.replace("\\", "/")
    text = re.sub(r"/{2,}", "/", text)
    while text.startswith("./"):
        text = text[2:]
    return text


def has_glob_magic(text: str, windows: bool = IS_WINDOWS) -> bool:
    """Return True if text contains an unescaped glob metacharacter."""
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and not windows:
            i += 2
            continue
        if ch in _GLOB_MAGIC:
            return True
        i += 1
    return False


def compile_glob(
    pattern: str, scope: str = GLOB_SCOPE_RELATIVE, windows: bool = IS_WINDOWS
) -> GlobMatcher:
    """
    Compile a glob into an anchored matcher.

    Args:
        pattern: Glob pattern
        scope: GLOB_SCOPE_RELATIVE (matched against workspace-relative paths)
            or GLOB_SCOPE_ABSOLUTE (matched against absolute paths)
        windows: Use Windows separator and case rules

    Returns:
        GlobMatcher for the pattern

    Raises:
        GlobPatternError: If the pattern is empty or malformed

    Examples:
        >>> compile_glob("src/**/*.py").matches("src/a/b/c.py")
        True
        >>> compile_glob("src/*.py").matches("src/a/c.py")
        False
    """
    if scope not in (GLOB_SCOPE_RELATIVE, GLOB_SCOPE_ABSOLUTE):
        raise ValueError(f"Unknown glob scope: {scope}")

    normalized = normalize_glob(pattern, windows=windows)
    if scope == GLOB_SCOPE_RELATIVE:
        normalized = normalized.lstrip("/")
    if not normalized:
        raise GlobPatternError(pattern, "empty pattern")

    body = _translate(normalized, pattern, windows)
    flags = re.IGNORECASE if windows else 0
    try:
        regex = re.compile(f"^{body}$", flags)
    except re.error as e:
        raise GlobPatternError(pattern, str(e)) from e
    return GlobMatcher(pattern=pattern, scope=scope, regex=regex, windows=windows)


def _translate(pattern: str, original: str, windows: bool, segment_start: bool = True) -> str:
    out: List[str] = []
    i = 0
    n = len(pattern)
    while i < n:
        ch = pattern[i]
        if ch == "\\" and not windows:
            if i + 1 >= n:
                raise GlobPatternError(original, "trailing unescaped backslash")
            out.append(re.escape(pattern[i + 1]))
            i += 2
        elif ch == "*":
            if pattern.startswith("**", i):
                j = i + 2
                while j < n and pattern[j] == "*":
                    j += 1
                at_segment = _at_segment_start(pattern, i, segment_start)
                if at_segment and j < n and pattern[j] == "/":
                    out.append("(?:[^/]*/)*")
                    i = j + 1
                else:
                    out.append(".*")
                    i = j
            else:
                out.append("[^/]*")
                i += 1
        elif ch == "?":
            out.append("[^/]")
            i += 1
        elif ch == "[":
            i, char_class = _translate_class(pattern, i, original, windows)
            out.append(char_class)
        elif ch == "{":
            end = _find_brace_end(pattern, i, original, windows)
            alternatives = _split_alternatives(pattern[i + 1 : end], windows)
            alt_start = _at_segment_start(pattern, i, segment_start)
            out.append(
                "(?:"
                + "|".join(_translate(alt, original, windows, alt_start) for alt in alternatives)
                + ")"
            )
            i = end + 1
        elif ch == "/":
            out.append("/")
            i += 1
        else:
            out.append(re.escape(ch))
            i += 1
    return "".join(out)


def _at_segment_start(pattern: str, i: int, segment_start: bool) -> bool:
    return segment_start if i == 0 else pattern[i - 1] == "/"


def _escape_class_char(ch: str) -> str:
    return "\\" + ch if ch in "\\^[]" else ch


def _translate_class(
    pattern: str, start: int, original: str, windows: bool
) -> Tuple[int, str]:
    i = start + 1
    n = len(pattern)
    negate = False
    if i < n and pattern[i] in "!^":
        negate = True
        i += 1

    chars: List[str] = []
    first = True
    while i < n:
        ch = pattern[i]
        if ch == "]" and not first:
            break
        if ch == "\\" and not windows:
            if i + 1 >= n:
                raise GlobPatternError(original, "trailing unescaped backslash")
            escaped = pattern[i + 1]
            chars.append("\\-" if escaped == "-" else _escape_class_char(escaped))
            i += 2
        else:
            chars.append(_escape_class_char(ch))
            i += 1
        first = False
    else:
        raise GlobPatternError(original, "unterminated character class")

    body = "".join(chars)
    # A negated class must still never cross a separator.
    if negate:
        return i + 1, f"[^/{body}]"
    return i + 1, f"[{body}]"


def _find_brace_end(pattern: str, start: int, original: str, windows: bool) -> int:
    depth = 0
    i = start
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and not windows:
            i += 2
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise GlobPatternError(original, "unterminated brace group")


def _split_alternatives(body: str, windows: bool) -> List[str]:
    parts: List[str] = []
    depth = 0
    current: List[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and not windows and i + 1 < len(body):
            current.append(body[i : i + 2])
            i += 2
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        elif ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
            i += 1
            continue
        current.append(ch)
        i += 1
    parts.append("".join(current))
    return parts


def escape_engine_regex(text: str) -> str:
    """Escape text for literal use inside a qgrep regex."""
    return "".join("\\" + ch if ch in _ENGINE_REGEX_SPECIAL else ch for ch in text)


def _has_unsupported_construct(fragment: str) -> bool:
    """Detect an unescaped ``(?`` (non-capturing group or look-around)."""
    i = 0
    while i < len(fragment) - 1:
        if fragment[i] == "\\":
            i += 2
            continue
        if fragment[i] == "(" and fragment[i + 1] == "?":
            return True
        i += 1
    return False


def ignore_glob_to_engine_regex(glob: str) -> Optional[str]:
    """
    Convert an editor ignore glob into a qgrep exclude regex fragment.

    The fragment matches the pattern at any path-segment boundary and also
    excludes everything below a matching directory.

    Args:
        glob: Ignore glob using only ``*``, ``?``, ``**`` and ``/``

    Returns:
        Regex fragment, or None when the glob cannot be expressed safely in
        the engine dialect

    Examples:
        >>> ignore_glob_to_engine_regex("**/node_modules")
        '(^|/)node_modules(/|$)'
        >>> ignore_glob_to_engine_regex("*.{js,ts}") is None
        True
    """
    text = glob.strip().replace("\\", "/")
    text = re.sub(r"/{2,}", "/", text)
    while text.startswith("./"):
        text = text[2:]
    text = text.lstrip("/")
    if any(ch in text for ch in "{}[]"):
        return None

    while text.startswith("**/"):
        text = text[3:]
    if text.endswith("/**"):
        text = text[:-3]
    text = text.rstrip("/")
    if not text or set(text) <= {"*", "/"}:
        # Would exclude the whole workspace.
        return None

    parts: List[str] = []
    i = 0
    while i < len(text):
        if text.startswith("**/", i):
            parts.append("(.*/)?")
            i += 3
        elif text.startswith("**", i):
            parts.append(".*")
            i += 2
        elif text[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif text[i] == "?":
            parts.append("[^/]")
            i += 1
        elif text[i] in _ENGINE_REGEX_SPECIAL:
            parts.append("\\" + text[i])
            i += 1
        else:
            parts.append(text[i])
            i += 1

    fragment = "(^|/)" + "".join(parts) + "(/|$)"
    if _has_unsupported_construct(fragment):
        return None
    return fragment
