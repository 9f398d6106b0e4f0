"""
Asynchronous runner for qgrep engine subprocesses.

Streams stdout/stderr while the process runs so long index builds can report
progress frames (``[ 42%] 1234 files``) before they exit, and returns the
complete output once the process closes.
"""

import asyncio
import codecs
import logging
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Union

from ..errors import CommandSpawnError

logger = logging.getLogger(__name__)

PROGRESS_FRAME_PATTERN = re.compile(r"\[\s*(\d{1,3})%\]\s+(\d+)\s+files\b")
READ_CHUNK_SIZE = 8192


@dataclass(frozen=True)
class ProgressFrame:
    """One ``[ NNN%] NNN files`` frame emitted by the engine."""

    percent: int
    files: int


@dataclass
class CommandResult:
    """Exit status and full output of a finished engine command."""

    exit_code: Optional[int]
    stdout: str
    stderr: str


ProgressSink = Callable[[ProgressFrame], None]
LineSink = Callable[[str], None]


def parse_progress_frame(line: str) -> Optional[ProgressFrame]:
    """Parse a progress frame, clamping the percentage to 0-100."""
    text = line.strip()
    if not text:
        return None
    match = PROGRESS_FRAME_PATTERN.search(text)
    if not match:
        return None
    percent = max(0, min(100, int(match.group(1))))
    return ProgressFrame(percent=percent, files=int(match.group(2)))


def extract_command_error(result: CommandResult, prefix: str) -> Optional[str]:
    """
    Classify a finished command as failed or not.

    Args:
        result: Finished command result
        prefix: Purpose of the command, e.g. "Update failed for workspace 'x'."

    Returns:
        Error message, or None when the command succeeded
    """
    stderr_text = result.stderr.strip()
    error_line = next(
        (
            line.strip()
            for line in stderr_text.splitlines()
            if line.strip().startswith("Error")
        ),
        None,
    )

    if result.exit_code != 0:
        detail = error_line or stderr_text
        if detail:
            return f"{prefix} {detail}"
        return f"{prefix} qgrep exited with code {result.exit_code}."
    if error_line:
        return f"{prefix} {error_line}"
    return None


class LineBuffer:
    """Splits streamed text into complete lines, keeping the partial tail."""

    def __init__(self):
        self._pending = ""

    def feed(self, text: str) -> List[str]:
        merged = self._pending + text
        # A trailing CR may be the first half of a CRLF split across chunks.
        hold = ""
        if merged.endswith("\r"):
            merged = merged[:-1]
            hold = "\r"
        merged = merged.replace("\r\n", "\n").replace("\r", "\n")
        parts = merged.split("\n")
        self._pending = parts.pop() + hold
        return parts

    def flush(self) -> Optional[str]:
        """Return the unterminated tail (if any non-blank) and reset."""
        rest = self._pending.rstrip("\r")
        self._pending = ""
        return rest if rest.strip() else None


class RunningCommand:
    """Handle for a live engine subprocess."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        args: Sequence[str],
        tag: Optional[str],
        on_progress: Optional[ProgressSink],
        on_stdout_line: Optional[LineSink],
        on_stderr_line: Optional[LineSink],
        on_exit: Callable[["RunningCommand"], None],
    ):
        self.process = process
        self.args = list(args)
        self.verb = self.args[0] if self.args else ""
        self.tag = tag
        self.cancelled = False
        self._on_progress = on_progress
        self._on_stdout_line = on_stdout_line
        self._on_stderr_line = on_stderr_line
        self._on_exit = on_exit
        self._task = asyncio.get_running_loop().create_task(self._collect())

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None

    def kill(self) -> None:
        """Best-effort kill; the exit is observed through wait()."""
        if not self.is_alive:
            return
        try:
            self.process.kill()
        except ProcessLookupError:
            pass

    def cancel(self) -> None:
        """Mark this command as deliberately cancelled and kill it."""
        self.cancelled = True
        self.kill()

    async def wait(self) -> CommandResult:
        return await asyncio.shield(self._task)

    async def _collect(self) -> CommandResult:
        stdout_chunks: List[str] = []
        stderr_chunks: List[str] = []
        try:
            await asyncio.gather(
                self._read_stream(
                    self.process.stdout, stdout_chunks, self._on_stdout_line, True
                ),
                self._read_stream(
                    self.process.stderr, stderr_chunks, self._on_stderr_line, False
                ),
            )
            exit_code = await self.process.wait()
        finally:
            self._on_exit(self)
        return CommandResult(
            exit_code=exit_code,
            stdout="".join(stdout_chunks),
            stderr="".join(stderr_chunks),
        )

    async def _read_stream(
        self,
        stream: Optional[asyncio.StreamReader],
        chunks: List[str],
        on_line: Optional[LineSink],
        track_progress: bool,
    ) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = LineBuffer()
        while True:
            data = await stream.read(READ_CHUNK_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            chunks.append(text)
            for line in buffer.feed(text):
                self._dispatch_line(line, on_line, track_progress)

        tail = decoder.decode(b"", final=True)
        if tail:
            chunks.append(tail)
            for line in buffer.feed(tail):
                self._dispatch_line(line, on_line, track_progress)
        last = buffer.flush()
        if last is not None:
            self._dispatch_line(last, on_line, track_progress)

    def _dispatch_line(
        self, line: str, on_line: Optional[LineSink], track_progress: bool
    ) -> None:
        try:
            if on_line is not None:
                on_line(line)
            if track_progress and self._on_progress is not None:
                frame = parse_progress_frame(line)
                if frame is not None:
                    self._on_progress(frame)
        except Exception as e:
            logger.warning(f"Output handler failed for qgrep {self.verb}: {e}")


class CommandRunner:
    """Launches engine commands and tracks the live ones by tag (root key)."""

    def __init__(self):
        self._active: Dict[Optional[str], Set[RunningCommand]] = {}

    async def start(
        self,
        binary_path: Union[str, Path],
        args: Sequence[str],
        cwd: Union[str, Path],
        on_progress: Optional[ProgressSink] = None,
        on_stdout_line: Optional[LineSink] = None,
        on_stderr_line: Optional[LineSink] = None,
        tag: Optional[str] = None,
    ) -> RunningCommand:
        """Spawn the engine and return a handle without waiting for exit.

        Raises:
            CommandSpawnError: If the process cannot be launched
        """
        kwargs = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        try:
            process = await asyncio.create_subprocess_exec(
                str(binary_path),
                *args,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except OSError as e:
            raise CommandSpawnError(f"Failed to launch {binary_path}: {e}") from e

        logger.debug(f"Started qgrep pid={process.pid}: {' '.join(args)}")
        command = RunningCommand(
            process,
            args,
            tag,
            on_progress,
            on_stdout_line,
            on_stderr_line,
            self._forget,
        )
        self._active.setdefault(tag, set()).add(command)
        return command

    async def run(
        self,
        binary_path: Union[str, Path],
        args: Sequence[str],
        cwd: Union[str, Path],
        on_progress: Optional[ProgressSink] = None,
        tag: Optional[str] = None,
    ) -> CommandResult:
        """Run the engine to completion."""
        command = await self.start(
            binary_path, args, cwd, on_progress=on_progress, tag=tag
        )
        return await command.wait()

    def active_commands(self, tag: Optional[str] = None) -> List[RunningCommand]:
        """Live commands for a tag (all tags when tag is None)."""
        if tag is None:
            return [cmd for group in self._active.values() for cmd in group]
        return list(self._active.get(tag, ()))

    def _forget(self, command: RunningCommand) -> None:
        group = self._active.get(command.tag)
        if group is None:
            return
        group.discard(command)
        if not group:
            del self._active[command.tag]
