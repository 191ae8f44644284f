import asyncio
import json
import time
from dataclasses import dataclass, field
from enum import StrEnum, auto
from pathlib import Path
from typing import Protocol

from loguru import logger

from ssmtunnel.api.session_control import SessionControl, port_forwarding_parameters
from ssmtunnel.binary.process import ProcessContext, ProcessHandle
from ssmtunnel.consts import port_forwarding_document, process_pid_key, region_key, session_id_key
from ssmtunnel.errors import (
    ErrorPatternDetected,
    MissingSessionFields,
    OutputWatchFailed,
    ProcessExitedPrematurely,
    ProcessStartError,
    ReadinessTimeout,
    TunnelError,
)
from ssmtunnel.readiness import ReadinessDetector, VerdictKind
from ssmtunnel.settings import Settings, TunnelRequest
from ssmtunnel.state import StateChannel
from ssmtunnel.types import CmdArg, OutputChannel, Pid, ProcessExit, Region, SessionId
from ssmtunnel.utils.settlement import Settlement

__all__ = ["AwsCliStrategy", "LaunchState", "PluginStrategy", "TunnelLauncher", "TunnelSession"]


class LaunchState(StrEnum):
    LAUNCHING = auto()
    READY = auto()
    ERROR_DETECTED = auto()
    PROCESS_EXITED_PREMATURELY = auto()
    TIMED_OUT = auto()
    WATCH_FAILED = auto()


@dataclass(frozen=True)
class LaunchOutcome:
    state: LaunchState
    line: str | None = None
    exit_code: int | None = None
    session_id: SessionId | None = None
    error: BaseException | None = field(default=None, compare=False)


@dataclass
class TunnelSession:
    region: Region
    session_id: SessionId | None = None
    pid: Pid | None = None
    state: LaunchState = LaunchState.LAUNCHING
    last_stdout: str | None = None
    last_stderr: str | None = None
    deadline: float | None = None
    handle: ProcessHandle | None = field(default=None, repr=False)


@dataclass(frozen=True)
class PreparedLaunch:
    binary: CmdArg
    args: tuple[str, ...]
    session_id: SessionId | None = None


class LaunchStrategy(Protocol):
    def prepare(self, request: TunnelRequest) -> PreparedLaunch: ...


class PluginStrategy:
    """Start the session through the API, then hand it to session-manager-plugin."""

    def __init__(self, session_control: SessionControl, binary: CmdArg = "session-manager-plugin"):
        self.session_control = session_control
        self.binary = binary

    def prepare(self, request: TunnelRequest) -> PreparedLaunch:
        try:
            session = self.session_control.start(request, require_stream=True)
            if not session.endpoint_url:
                raise MissingSessionFields("endpoint", session_id=session.session_id)
        except MissingSessionFields as e:
            # the session exists remotely even though the plugin cannot attach to it
            if e.session_id:
                self._abandon(e.session_id, request.region)
            raise
        parameters = {"Target": request.target, "DocumentName": port_forwarding_document,
                      "Parameters": port_forwarding_parameters(request)}
        return PreparedLaunch(
            self.binary,
            (session.plugin_payload(), request.region, "StartSession", "",
             json.dumps(parameters), session.endpoint_url),
            session.session_id,
        )

    def _abandon(self, session_id: SessionId, region: Region) -> None:
        try:
            self.session_control.terminate(session_id, region)
        except Exception as e:
            logger.warning(f"Could not terminate incomplete SSM session {session_id}: {e}")


class AwsCliStrategy:
    """Let ``aws ssm start-session`` start the session; its id is read from the output."""

    def __init__(self, binary: CmdArg = "aws"):
        self.binary = binary

    def prepare(self, request: TunnelRequest) -> PreparedLaunch:
        return PreparedLaunch(
            self.binary,
            ("ssm", "start-session",
             "--target", request.target,
             "--document-name", port_forwarding_document,
             "--parameters", json.dumps(port_forwarding_parameters(request)),
             "--region", request.region),
        )


class TunnelLauncher:
    def __init__(self, strategy: LaunchStrategy, state: StateChannel,
                 session_control: SessionControl | None = None,
                 detector: ReadinessDetector | None = None,
                 timeout: float = 45.0,
                 log_dir: Path | None = None,
                 poll_interval: float = 0.05):
        self.strategy = strategy
        self.state = state
        self.session_control = session_control
        self.detector = detector or ReadinessDetector()
        self.timeout = timeout
        self.log_dir = log_dir
        self.poll_interval = poll_interval
        self.last_settlement: Settlement[LaunchOutcome] | None = None

    @classmethod
    def from_settings(cls, settings: Settings, state: StateChannel,
                      session_control: SessionControl) -> "TunnelLauncher":
        if settings.mode == "cli":
            strategy: LaunchStrategy = AwsCliStrategy(settings.aws_binary)
        else:
            strategy = PluginStrategy(session_control, settings.plugin_binary)
        return cls(strategy, state, session_control,
                   timeout=settings.readiness_timeout,
                   log_dir=settings.log_dir and settings.log_dir / "processes",
                   poll_interval=settings.poll_interval)

    async def launch(self, request: TunnelRequest) -> TunnelSession:
        """Start the tunnel and wait until it is ready, reports an error, exits or times out.

        Only a ready tunnel is recorded in the state channel. Anything else stops the
        process, releases the remote session and raises.
        """
        prepared = await asyncio.to_thread(self.strategy.prepare, request)
        tunnel = TunnelSession(region=request.region, session_id=prepared.session_id)

        context = ProcessContext(prepared.binary, *prepared.args, detached=True,
                                 log_dir=self.log_dir, poll_interval=self.poll_interval)
        try:
            async with context as handle:
                tunnel.handle = handle
                tunnel.pid = handle.pid
                logger.info(f"Tunnel process started with pid {handle.pid}, waiting for it to be ready")
                outcome = await self._await_readiness(tunnel, handle)
        except ProcessStartError:
            await self._release_session(tunnel)
            raise

        tunnel.state = outcome.state
        tunnel.session_id = tunnel.session_id or outcome.session_id

        if outcome.state is LaunchState.READY:
            self._persist(tunnel)
            logger.info(f"SSM session {tunnel.session_id} is ready on localhost:{request.local_port}")
            return tunnel

        handle.terminate()
        await self._release_session(tunnel)
        raise self._failure(outcome) from outcome.error

    async def _await_readiness(self, tunnel: TunnelSession, handle: ProcessHandle) -> LaunchOutcome:
        settlement: Settlement[LaunchOutcome] = Settlement()
        self.last_settlement = settlement
        loop = asyncio.get_running_loop()

        self.detector.reset()
        tunnel.deadline = time.monotonic() + self.timeout
        timer = loop.call_later(self.timeout, settlement.settle, LaunchOutcome(LaunchState.TIMED_OUT))
        watcher = asyncio.create_task(self._watch(tunnel, handle, settlement))
        try:
            return await settlement.wait()
        finally:
            timer.cancel()
            watcher.cancel()
            await asyncio.gather(watcher, return_exceptions=True)

    async def _watch(self, tunnel: TunnelSession, handle: ProcessHandle,
                     settlement: Settlement[LaunchOutcome]) -> None:
        try:
            await self._follow(tunnel, handle, settlement)
        except Exception as e:
            logger.opt(exception=e).debug("Tunnel output watcher failed")
            settlement.settle(LaunchOutcome(LaunchState.WATCH_FAILED, error=e))

    async def _follow(self, tunnel: TunnelSession, handle: ProcessHandle,
                      settlement: Settlement[LaunchOutcome]) -> None:
        async for event in handle.events():
            if isinstance(event, ProcessExit):
                settlement.settle(LaunchOutcome(LaunchState.PROCESS_EXITED_PREMATURELY, exit_code=event.code))
                continue

            logger.opt(raw=True).debug(f"{event}\n")
            if event.channel is OutputChannel.STDOUT:
                tunnel.last_stdout = event.line
            else:
                tunnel.last_stderr = event.line

            verdict = self.detector.classify(event.line, event.channel)
            match verdict.kind:
                case VerdictKind.READY:
                    settlement.settle(LaunchOutcome(LaunchState.READY, verdict.line, session_id=verdict.session_id))
                case VerdictKind.ERROR:
                    settlement.settle(LaunchOutcome(LaunchState.ERROR_DETECTED, verdict.line))
                case VerdictKind.SESSION:
                    tunnel.session_id = tunnel.session_id or verdict.session_id

    def _persist(self, tunnel: TunnelSession) -> None:
        if tunnel.session_id:
            self.state.set(session_id_key, tunnel.session_id)
        self.state.set(region_key, tunnel.region)
        if tunnel.pid is not None:
            self.state.set(process_pid_key, str(tunnel.pid))

    async def _release_session(self, tunnel: TunnelSession) -> None:
        if not (self.session_control and tunnel.session_id):
            return
        try:
            await asyncio.to_thread(self.session_control.terminate, tunnel.session_id, tunnel.region)
        except Exception as e:
            logger.warning(f"Could not terminate SSM session {tunnel.session_id}: {e}")

    def _failure(self, outcome: LaunchOutcome) -> TunnelError:
        match outcome.state:
            case LaunchState.ERROR_DETECTED:
                return ErrorPatternDetected(outcome.line or "")
            case LaunchState.PROCESS_EXITED_PREMATURELY:
                return ProcessExitedPrematurely(outcome.exit_code)
            case LaunchState.WATCH_FAILED:
                return OutputWatchFailed(outcome.error)
            case _:
                return ReadinessTimeout(self.timeout)
