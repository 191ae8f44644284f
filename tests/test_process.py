import asyncio
import subprocess
import sys
from pathlib import Path

import pytest

from ssmtunnel.binary.command import collect, run_command
from ssmtunnel.binary.process import ProcessContext, signal_pid
from ssmtunnel.errors import CommandFailed, ProcessStartError
from ssmtunnel.types import OutputChannel, ProcessExit, ProcessOutput


async def _drain(context: ProcessContext) -> list:
    async with context as handle:
        return [event async for event in handle.events()]


async def test_attached_events_keep_per_stream_order():
    script = "import sys\nfor i in range(5): print(i, flush=True)\nsys.stderr.write('oops\\n')\nsys.exit(3)"
    events = await _drain(ProcessContext(sys.executable, "-c", script))

    stdout = [e.line for e in events if isinstance(e, ProcessOutput) and e.channel is OutputChannel.STDOUT]
    stderr = [e.line for e in events if isinstance(e, ProcessOutput) and e.channel is OutputChannel.STDERR]
    exits = [e for e in events if isinstance(e, ProcessExit)]
    assert stdout == ["0", "1", "2", "3", "4"]
    assert stderr == ["oops"]
    assert [e.code for e in exits] == [3]


async def test_stdin_is_closed():
    result = await collect(ProcessContext(sys.executable, "-c", "import sys; print(repr(sys.stdin.read()))"))
    assert result.stdout == "''"


async def test_run_command_collects_output():
    result = await run_command("echo hello")
    assert (result.exit_code, result.stdout, result.stderr) == (0, "hello", "")


async def test_failed_command_keeps_output():
    result = await run_command("echo out; echo err >&2; exit 3")
    assert result.exit_code == 3
    assert result.stdout == "out"
    assert result.stderr == "err"
    with pytest.raises(CommandFailed) as info:
        result.check()
    assert info.value.result is result


async def test_detached_output_is_followed(tmp_path: Path):
    script = "import sys\nprint('one', flush=True)\nsys.stderr.write('two\\n')\nprint('three')\nsys.exit(4)"
    context = ProcessContext(sys.executable, "-c", script, detached=True, log_dir=tmp_path, poll_interval=0.01)
    events = await asyncio.wait_for(_drain(context), timeout=10)

    lines = [(e.channel, e.line) for e in events if isinstance(e, ProcessOutput)]
    assert [line for channel, line in lines if channel is OutputChannel.STDOUT] == ["one", "three"]
    assert (OutputChannel.STDERR, "two") in lines
    assert [e.code for e in events if isinstance(e, ProcessExit)] == [4]
    assert list(tmp_path.glob("*.stdout.log"))


async def test_detached_process_outlives_context(tmp_path: Path):
    context = ProcessContext(sys.executable, "-c", "import time; time.sleep(30)",
                             detached=True, log_dir=tmp_path)
    async with context as handle:
        pass
    try:
        assert handle.is_running
    finally:
        handle.kill()
    for _ in range(100):
        if not handle.is_running:
            break
        await asyncio.sleep(0.05)
    assert not handle.is_running


async def test_attached_process_stopped_on_exit():
    context = ProcessContext(sys.executable, "-c", "import time; time.sleep(30)")
    async with context as handle:
        assert handle.is_running
    assert not handle.is_running


async def test_missing_binary_is_start_error(tmp_path: Path):
    with pytest.raises(ProcessStartError):
        async with ProcessContext("/definitely/not/a/real/binary", detached=True, log_dir=tmp_path):
            pass


def test_signal_pid_of_gone_process():
    process = subprocess.Popen([sys.executable, "-c", "pass"], start_new_session=True)
    process.wait()
    with pytest.raises(ProcessLookupError):
        signal_pid(process.pid)
