"""Tests for the engine subprocess runner and its output helpers."""

import sys

import pytest

from qgrep_indexer.errors import CommandSpawnError
from qgrep_indexer.services.command_runner import (
    CommandResult,
    CommandRunner,
    LineBuffer,
    ProgressFrame,
    extract_command_error,
    parse_progress_frame,
)


class TestParseProgressFrame:
    def test_parses_padded_frame(self):
        assert parse_progress_frame("[ 42%] 1234 files") == ProgressFrame(42, 1234)

    def test_parses_frame_with_trailing_text(self):
        assert parse_progress_frame("[100%] 77 files, 3 MB") == ProgressFrame(100, 77)

    def test_clamps_percentage(self):
        assert parse_progress_frame("[250%] 5 files") == ProgressFrame(100, 5)

    @pytest.mark.parametrize("line", ["", "   ", "Building index", "[ 10%]", "10% 5 files"])
    def test_rejects_non_frames(self, line):
        assert parse_progress_frame(line) is None


class TestExtractCommandError:
    def test_success(self):
        assert extract_command_error(CommandResult(0, "ok", ""), "Update failed.") is None

    def test_prefers_error_line(self):
        result = CommandResult(1, "", "warning: x\nError: cannot open file\nmore")
        assert extract_command_error(result, "Update failed.") == "Update failed. Error: cannot open file"

    def test_falls_back_to_raw_stderr(self):
        result = CommandResult(2, "", "something broke\n")
        assert extract_command_error(result, "Init failed.") == "Init failed. something broke"

    def test_falls_back_to_exit_code(self):
        result = CommandResult(3, "", "")
        assert extract_command_error(result, "Build failed.") == "Build failed. qgrep exited with code 3."

    def test_error_line_with_zero_exit_is_error(self):
        result = CommandResult(0, "", "Error: descriptor is corrupt")
        assert extract_command_error(result, "Search failed.") == "Search failed. Error: descriptor is corrupt"

    def test_non_error_stderr_with_zero_exit_is_success(self):
        assert extract_command_error(CommandResult(0, "", "note: slow disk"), "x") is None


class TestLineBuffer:
    def test_splits_complete_lines_and_keeps_tail(self):
        buffer = LineBuffer()
        assert buffer.feed("one\ntwo\nthr") == ["one", "two"]
        assert buffer.feed("ee\n") == ["three"]
        assert buffer.flush() is None

    def test_normalizes_cr_and_crlf(self):
        buffer = LineBuffer()
        assert buffer.feed("[ 10%] 1 files\r[ 20%] 2 files\r\nend") == [
            "[ 10%] 1 files",
            "[ 20%] 2 files",
        ]
        assert buffer.flush() == "end"

    def test_crlf_split_across_chunks(self):
        buffer = LineBuffer()
        assert buffer.feed("line\r") == []
        assert buffer.feed("\nnext\n") == ["line", "next"]


@pytest.mark.slow
class TestCommandRunner:
    """Exercises the real runner with Python child processes."""

    @pytest.mark.asyncio
    async def test_run_collects_output_and_progress(self, tmp_path):
        script = (
            "import sys\n"
            "print('[ 50%] 5 files', flush=True)\n"
            "print('[100%] 10 files', flush=True)\n"
            "sys.stderr.write('done\\n')\n"
            "sys.exit(3)\n"
        )
        frames = []
        runner = CommandRunner()

        result = await runner.run(
            sys.executable, ["-c", script], tmp_path, on_progress=frames.append
        )

        assert result.exit_code == 3
        assert "[100%] 10 files" in result.stdout
        assert result.stderr.strip() == "done"
        assert frames == [ProgressFrame(50, 5), ProgressFrame(100, 10)]

    @pytest.mark.asyncio
    async def test_unterminated_last_line_is_delivered(self, tmp_path):
        lines = []
        runner = CommandRunner()
        command = await runner.start(
            sys.executable,
            ["-c", "import sys; sys.stdout.write('a\\nb')"],
            tmp_path,
            on_stdout_line=lines.append,
        )
        await command.wait()
        assert lines == ["a", "b"]

    @pytest.mark.asyncio
    async def test_cancel_kills_process_and_marks_handle(self, tmp_path):
        runner = CommandRunner()
        command = await runner.start(
            sys.executable, ["-c", "import time; time.sleep(30)"], tmp_path, tag="root"
        )
        assert command.is_alive
        assert runner.active_commands("root") == [command]

        command.cancel()
        result = await command.wait()

        assert command.cancelled
        assert result.exit_code != 0
        assert runner.active_commands("root") == []
        assert runner.active_commands() == []

    @pytest.mark.asyncio
    async def test_kill_after_exit_is_harmless(self, tmp_path):
        runner = CommandRunner()
        command = await runner.start(sys.executable, ["-c", "pass"], tmp_path)
        await command.wait()
        command.kill()
        assert not command.is_alive
        assert not command.cancelled

    @pytest.mark.asyncio
    async def test_failing_progress_sink_does_not_break_collection(self, tmp_path):
        def broken_sink(frame):
            raise RuntimeError("boom")

        runner = CommandRunner()
        result = await runner.run(
            sys.executable,
            ["-c", "print('[100%] 1 files')"],
            tmp_path,
            on_progress=broken_sink,
        )
        assert result.exit_code == 0
        assert "1 files" in result.stdout

    @pytest.mark.asyncio
    async def test_spawn_failure(self, tmp_path):
        runner = CommandRunner()
        with pytest.raises(CommandSpawnError):
            await runner.start(tmp_path / "missing-qgrep", ["update", "x"], tmp_path)
