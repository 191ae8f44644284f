import asyncio
import os
import signal
import subprocess
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager
from typing import TypeAlias
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import aiostream
from beartype.door import die_if_unbearable
from loguru import logger
from platformdirs import user_log_dir
from rich.pretty import pretty_repr

from ssmtunnel.consts import APP_NAME, AUTHOR, terminate_grace_period
from ssmtunnel.errors import ProcessStartError
from ssmtunnel.types import CmdArg, CmdArgs, OutputChannel, ProcessEvent, ProcessExit, ProcessOutput

__all__ = ["ProcessContext", "ProcessHandle", "signal_pid"]

EventSource: TypeAlias = Callable[[], AsyncIterator[ProcessEvent]]


def signal_pid(pid: int, sig: int = signal.SIGTERM, *, group: bool = True) -> None:
    """Deliver ``sig`` to ``pid`` (or to the process group it leads).

    Raises ``ProcessLookupError`` when nothing with that id is alive.
    """
    if group and hasattr(os, "killpg"):
        os.killpg(pid, sig)
    else:
        os.kill(pid, sig)


def _default_log_dir() -> Path:
    return Path(user_log_dir(APP_NAME, AUTHOR)) / "processes"


async def _read_pipe(stream: asyncio.StreamReader, channel: OutputChannel) -> AsyncIterator[ProcessOutput]:
    while line := await stream.readline():
        yield ProcessOutput.from_bytes(line, channel)


async def _await_exit(process: asyncio.subprocess.Process) -> AsyncIterator[ProcessExit]:
    yield ProcessExit.now(await process.wait())


async def _follow_file(
        path: Path, channel: OutputChannel,
        process: subprocess.Popen, poll_interval: float) -> AsyncIterator[ProcessOutput]:
    pending = b""
    with path.open("rb") as handle:
        while True:
            chunk = handle.readline()
            if chunk:
                pending += chunk
                if pending.endswith(b"\n"):
                    yield ProcessOutput.from_bytes(pending, channel)
                    pending = b""
                continue
            if process.poll() is not None:
                # Anything flushed between the last read and the exit
                for line in (pending + handle.read()).splitlines():
                    yield ProcessOutput.from_bytes(line, channel)
                return
            await asyncio.sleep(poll_interval)


async def _poll_exit(process: subprocess.Popen, poll_interval: float) -> AsyncIterator[ProcessExit]:
    while (code := process.poll()) is None:
        await asyncio.sleep(poll_interval)
    yield ProcessExit.now(code)


@dataclass
class ProcessHandle:
    """A running process seen as one merged stream of output lines and a final exit."""

    pid: int
    sources: list[EventSource]
    poll: Callable[[], int | None]
    send_signal: Callable[[int], None]
    capture: bool = False
    stdout_lines: list[str] = field(default_factory=list)
    stderr_lines: list[str] = field(default_factory=list)

    @property
    def return_code(self) -> int | None:
        return self.poll()

    @property
    def is_running(self) -> bool:
        return self.poll() is None

    async def events(self) -> AsyncIterator[ProcessEvent]:
        """Merge stdout, stderr and exit. Single use.

        Lines keep their order within one stream; nothing orders them across streams.
        """
        merged = aiostream.stream.merge(*(source() for source in self.sources))
        async with merged.stream() as streamer:
            async for event in streamer:
                if self.capture and isinstance(event, ProcessOutput):
                    lines = self.stdout_lines if event.channel is OutputChannel.STDOUT else self.stderr_lines
                    lines.append(event.line)
                yield event

    def terminate(self) -> None:
        if self.is_running:
            self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        if self.is_running:
            self.send_signal(signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)


class ProcessContext(AbstractAsyncContextManager[ProcessHandle]):
    """Launch ``binary`` with ``args``; standard input is always closed.

    Attached processes are piped and stopped when the context exits.
    Detached processes get their own session, write to log files that are
    followed for output, and keep running after the context (and the
    interpreter) is gone.
    """

    def __init__(self, binary: CmdArg, *args: CmdArg,
                 detached: bool = False,
                 capture: bool = False,
                 log_dir: Path | None = None,
                 poll_interval: float = 0.05):
        self.binary = binary
        self.args = args
        self.detached = detached
        self.capture = capture
        self.log_dir = log_dir
        self.poll_interval = poll_interval

        self._process: asyncio.subprocess.Process | None = None
        self._popen: subprocess.Popen | None = None

    @property
    def name(self) -> str:
        return Path(self.binary).name

    async def __aenter__(self) -> ProcessHandle:
        if self._process is not None or self._popen is not None:
            raise RuntimeError("Context already entered, make a new one")

        die_if_unbearable(self.args, CmdArgs)
        logger.debug(f"Starting {self.binary} with {pretty_repr(self.args)}")

        try:
            if self.detached:
                return self._start_detached()
            return await self._start_attached()
        except OSError as e:
            raise ProcessStartError(f"Could not start {self.binary}: {e}") from e

    async def _start_attached(self) -> ProcessHandle:
        process = await asyncio.create_subprocess_exec(
            self.binary, *self.args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE)
        self._process = process

        sources: list[EventSource] = []
        if stdout := process.stdout:
            sources.append(lambda: _read_pipe(stdout, OutputChannel.STDOUT))
        if stderr := process.stderr:
            sources.append(lambda: _read_pipe(stderr, OutputChannel.STDERR))
        sources.append(lambda: _await_exit(process))

        return ProcessHandle(
            pid=process.pid,
            sources=sources,
            poll=lambda: process.returncode,
            send_signal=process.send_signal,
            capture=self.capture,
        )

    def _start_detached(self) -> ProcessHandle:
        log_dir = self.log_dir or _default_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        stem = f"{self.name}-{datetime.now():%Y%m%d-%H%M%S-%f}"
        stdout_path = log_dir / f"{stem}.stdout.log"
        stderr_path = log_dir / f"{stem}.stderr.log"

        with stdout_path.open("wb") as stdout, stderr_path.open("wb") as stderr:
            popen = subprocess.Popen(  # noqa: S603 - arguments are built by the launcher
                [self.binary, *self.args],
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                start_new_session=True,
            )
        self._popen = popen
        logger.debug(f"{self.name} detached as pid {popen.pid}, logging to {stdout_path.parent}")

        def send(sig: int) -> None:
            try:
                signal_pid(popen.pid, sig)
            except ProcessLookupError:
                pass

        interval = self.poll_interval
        return ProcessHandle(
            pid=popen.pid,
            sources=[
                lambda: _follow_file(stdout_path, OutputChannel.STDOUT, popen, interval),
                lambda: _follow_file(stderr_path, OutputChannel.STDERR, popen, interval),
                lambda: _poll_exit(popen, interval),
            ],
            poll=popen.poll,
            send_signal=send,
            capture=self.capture,
        )

    async def __aexit__(self, exc_type, exc_value, traceback):
        # Detached processes are left to the cleanup phase
        if not (process := self._process) or process.returncode is not None:
            return

        logger.debug(f"Terminating {self.name}...")
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=terminate_grace_period)
        except asyncio.TimeoutError:
            logger.debug(f"Force killing {self.name}...")
            process.kill()
            await process.wait()
