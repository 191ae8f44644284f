"""Tear down what a launch invocation left behind, working only from persisted state.

The pid may no longer refer to the tunnel process: the OS can reuse it between
the two invocations. Signalling is therefore best-effort.
"""

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from ssmtunnel.api.session_control import SessionControl
from ssmtunnel.binary.process import signal_pid
from ssmtunnel.consts import process_pid_key, region_key, session_id_key
from ssmtunnel.errors import CleanupWarning, StateReadError
from ssmtunnel.state import StateChannel
from ssmtunnel.types import Pid, Region, SessionId


@dataclass
class CleanupReport:
    signalled: Pid | None = None
    already_stopped: bool = False
    terminated: SessionId | None = None
    warnings: list[CleanupWarning] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return self.signalled is None and self.terminated is None and not self.already_stopped and not self.warnings


@dataclass(frozen=True)
class PersistedTunnel:
    pid: str | None
    session_id: SessionId | None
    region: Region | None


class CleanupCoordinator:
    def __init__(self, state: StateChannel, session_control: SessionControl):
        self.state = state
        self.session_control = session_control

    def read_state(self) -> PersistedTunnel:
        try:
            return PersistedTunnel(
                pid=self.state.get(process_pid_key),
                session_id=self.state.get(session_id_key),
                region=self.state.get(region_key),
            )
        except StateReadError:
            raise
        except Exception as e:
            raise StateReadError(f"Could not read tunnel state: {e}") from e

    async def run(self) -> CleanupReport:
        """Stop the local process, then the remote session. Only a state read failure raises."""
        persisted = self.read_state()
        report = CleanupReport()

        if persisted.pid:
            self._stop_process(persisted.pid, report)
        if persisted.session_id:
            await self._terminate_session(persisted.session_id, persisted.region, report)

        if report.empty:
            logger.info("Nothing to clean up")
        for warning in report.warnings:
            logger.warning(str(warning))
        return report

    @staticmethod
    def _stop_process(raw_pid: str, report: CleanupReport) -> None:
        try:
            pid = int(raw_pid)
            if pid <= 0:
                raise ValueError(f"invalid pid {raw_pid!r}")
            signal_pid(pid)
        except ProcessLookupError:
            logger.info(f"Tunnel process {raw_pid} already stopped")
            report.already_stopped = True
        except (OSError, ValueError) as e:
            report.warnings.append(CleanupWarning(f"Stopping tunnel process {raw_pid}", e))
        else:
            logger.info(f"Sent SIGTERM to tunnel process {pid}")
            report.signalled = pid

    async def _terminate_session(self, session_id: SessionId, region: Region | None,
                                 report: CleanupReport) -> None:
        if not region:
            report.warnings.append(
                CleanupWarning(f"Terminating SSM session {session_id}", LookupError("no region recorded")))
            return
        try:
            await asyncio.to_thread(self.session_control.terminate, session_id, region)
        except Exception as e:
            report.warnings.append(CleanupWarning(f"Terminating SSM session {session_id}", e))
        else:
            report.terminated = session_id
