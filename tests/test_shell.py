from __future__ import annotations

import io
import subprocess
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from sprint.shell import Command, ExecutionError, Pipe, PipeKind, RunResult, Shell


def test_prepare_wraps_command_in_shell() -> None:
    assert Shell().prepare("ls -l | wc") == ["sh", "-c", "ls -l | wc"]


def test_prepare_custom_shell() -> None:
    shell = Shell(shell="bash -xeo pipefail -c")
    assert shell.prepare("ls *") == ["bash", "-xeo", "pipefail", "-c", "ls *"]


def test_prepare_direct_tokenizes_command() -> None:
    shell = Shell(shell=None)
    assert shell.prepare("printf '%s' 'a b'") == ["printf", "%s", "a b"]


@pytest.mark.parametrize("shell_str,command", [(None, "echo 'unterminated"), ("sh -c 'oops", "true")])
def test_prepare_tokenization_error(shell_str, command) -> None:
    with pytest.raises(ExecutionError, match="Cannot parse"):
        Shell(shell=shell_str).prepare(command)


def test_prepare_direct_empty_command() -> None:
    with pytest.raises(ExecutionError, match="empty"):
        Shell(shell=None).prepare("   ")


def test_pipe_text_only_for_string() -> None:
    with pytest.raises(ValueError):
        Pipe(PipeKind.NULL, "text")


def test_pipe_stream_mapping() -> None:
    assert Pipe.string().stdin_arg() == subprocess.PIPE
    assert Pipe.null().stdin_arg() is None
    assert Pipe.null().stdout_arg() == subprocess.DEVNULL
    assert Pipe.stdout().stdout_arg() is None
    assert Pipe.string().stdout_arg() == subprocess.PIPE
    assert Pipe.null().stderr_arg() == subprocess.DEVNULL
    assert Pipe.stderr().stderr_arg() is None
    assert Pipe.string().stderr_arg() == subprocess.PIPE


def test_core_exit_codes(quiet_shell: Shell) -> None:
    assert quiet_shell.core(Command("true")).code == 0
    assert quiet_shell.core(Command("exit 3")).code == 3


def test_core_killed_by_signal(quiet_shell: Shell) -> None:
    result = quiet_shell.core(Command("kill -9 $$"))
    assert result.code is None
    assert result.error_message() == "Command `kill -9 $$` was killed by a signal!"


def test_core_captures_stdout(quiet_shell: Shell) -> None:
    result = quiet_shell.core(Command("echo hi", stdout=Pipe.string()))
    assert result.stdout == Pipe.string("hi\n")
    assert result.code == 0


def test_core_captures_stderr(quiet_shell: Shell) -> None:
    result = quiet_shell.core(Command("echo oops >&2", stdout=Pipe.null(), stderr=Pipe.string()))
    assert result.stderr.text == "oops\n"
    assert result.stdout.text is None


def test_core_scripted_stdin(quiet_shell: Shell) -> None:
    result = quiet_shell.core(Command("cat", stdin=Pipe.string("abc\n"), stdout=Pipe.string()))
    assert result.stdout.text == "abc\n"


def test_core_stdin_not_read_does_not_block(quiet_shell: Shell) -> None:
    payload = "x" * (1 << 20)
    start = time.monotonic()
    result = quiet_shell.core(Command("true", stdin=Pipe.string(payload)))
    assert result.code == 0
    assert time.monotonic() - start < 10


def test_core_does_not_mutate_input(quiet_shell: Shell) -> None:
    command = Command("echo hi", stdout=Pipe.string())
    result = quiet_shell.core(command)
    assert command.code is None
    assert command.stdout.text is None
    assert result is not command
    assert result.codes is not command.codes


def test_core_direct_mode() -> None:
    shell = Shell(shell=None, print=False)
    result = shell.core(Command("printf '%s' 'a b'", stdout=Pipe.string()))
    assert result.stdout.text == "a b"


def test_core_spawn_failure() -> None:
    shell = Shell(shell=None, print=False)
    with pytest.raises(ExecutionError, match="Failed to spawn"):
        shell.core(Command("definitely-not-a-real-program-xyz"))


def test_spawn_returns_live_process(quiet_shell: Shell) -> None:
    for _ in range(20):
        process = quiet_shell.spawn(Command("cat", stdin=Pipe.string("data"), stdout=Pipe.string()))
        # Stdin belongs to the writer thread
        assert process.stdin is None
        out, _ = process.communicate(timeout=10)
        assert out == b"data"
        assert process.returncode == 0


def test_spawn_stdin_with_unread_payload(quiet_shell: Shell) -> None:
    process = quiet_shell.spawn(Command("true", stdin=Pipe.string("x" * (1 << 20))))
    assert process.wait(timeout=10) == 0


def test_core_replaces_undecodable_output(quiet_shell: Shell) -> None:
    result = quiet_shell.core(Command("printf '\\377\\376ok'", stdout=Pipe.string()))
    assert result.code == 0
    assert result.stdout.text == "\ufffd\ufffdok"


def test_core_keeps_line_endings(quiet_shell: Shell) -> None:
    result = quiet_shell.core(Command("printf 'a\\r\\nb'", stdout=Pipe.string(), stderr=Pipe.string()))
    assert result.stdout.text == "a\r\nb"
    assert result.stderr.text == ""


def test_core_non_ascii_stdin_round_trip(quiet_shell: Shell) -> None:
    result = quiet_shell.core(Command("cat", stdin=Pipe.string("héllo ✓"), stdout=Pipe.string()))
    assert result.stdout.text == "héllo ✓"


def test_error_message_accepted_codes() -> None:
    assert Command("ls *", codes=[2], code=2).error_message() is None
    assert Command("ls *", code=2).error_message() == "Command `ls *` exited with code: `2`!"


def test_run_result_exit_code() -> None:
    assert RunResult([Command("a", code=0), Command("b", code=4)]).exit_code == 4
    assert RunResult([Command("a", code=None)]).exit_code == 1
    assert RunResult([]).exit_code == 1


def test_run_sequential_output(shell: Shell, output: io.StringIO) -> None:
    result = shell.run([Command("true"), Command("exit 0")])

    assert result.error is None
    assert [c.code for c in result.commands] == [0, 0]
    assert output.getvalue() == "```text\n$ true\n\n$ exit 0\n```\n\n"


def test_run_sequential_stops_on_failure(shell: Shell, output: io.StringIO) -> None:
    result = shell.run([Command("true"), Command("false"), Command("touch never")])

    assert len(result.commands) == 2
    assert result.error == "Command `false` exited with code: `1`!"
    assert result.exit_code == 1
    assert output.getvalue().endswith("```\n\n**Command `false` exited with code: `1`!**\n\n")
    assert "touch never" not in output.getvalue()


def test_run_sequential_accepts_listed_codes(quiet_shell: Shell) -> None:
    result = quiet_shell.run([Command("exit 2", codes=[2]), Command("true")])
    assert result.error is None
    assert len(result.commands) == 2


def test_run_pretty_prints_compound_commands(shell: Shell, output: io.StringIO) -> None:
    shell.run([Command("true && true || false; true")])
    assert "$ true \\\n&& true \\\n|| false; \\\ntrue\n" in output.getvalue()


def test_run_dry_run(printer, output: io.StringIO) -> None:
    shell = Shell(dry_run=True, printer=printer)
    with patch("sprint.shell.subprocess.Popen") as popen:
        result = shell.run([Command("false"), Command("rm -rf nothing")])

    popen.assert_not_called()
    assert result.error is None
    assert [c.code for c in result.commands] == [None, None]
    assert output.getvalue() == "```text\nfalse\nrm -rf nothing\n```\n\n"


def test_run_parallel_collects_all_results(quiet_shell: Shell, temp_dir: Path) -> None:
    quiet_shell.sync = False
    commands = [
        Command("false"),
        Command(f"touch {temp_dir / 'a'}"),
        Command("echo b", stdout=Pipe.string()),
    ]

    result = quiet_shell.run(commands)

    assert [c.code for c in result.commands] == [1, 0, 0]
    assert result.commands[2].stdout.text == "b\n"
    assert result.error is None
    assert (temp_dir / "a").exists()


def test_run_parallel_runs_concurrently(quiet_shell: Shell) -> None:
    quiet_shell.sync = False
    start = time.monotonic()
    with patch("sprint.shell.os.cpu_count", return_value=4):
        quiet_shell.run([Command("sleep 1") for _ in range(4)])
    assert time.monotonic() - start < 3.5


def test_pipe1(quiet_shell: Shell) -> None:
    assert quiet_shell.pipe1("printf hello") == "hello"


def test_run1_prints_via_printer(shell: Shell) -> None:
    shell.printer = MagicMock()
    shell.run1(Command("true"))
    shell.printer.command.assert_called_once_with("true", show_prompt=True)
