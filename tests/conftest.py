"""Shared pytest fixtures."""

import subprocess
import sys
import textwrap
from collections.abc import Iterator

import pytest

from ssmtunnel.api.session_control import SessionStart
from ssmtunnel.settings import TunnelRequest
from ssmtunnel.state import MemoryState
from ssmtunnel.tunnel import PreparedLaunch

ENDPOINT = "https://ssm.us-east-1.amazonaws.com"

READY_LINE = "Port 8080 opened for sessionId sess-abc. Waiting for connections..."


class FakeSessionControl:
    def __init__(self, response: dict | None = None, terminate_error: Exception | None = None,
                 endpoint_url: str | None = ENDPOINT):
        self.response = {"SessionId": "sess-abc", "StreamUrl": "wss://stream", "TokenValue": "token"} \
            if response is None else response
        self.terminate_error = terminate_error
        self.endpoint_url = endpoint_url
        self.started: list[TunnelRequest] = []
        self.terminated: list[tuple[str, str]] = []

    def start(self, request: TunnelRequest, require_stream: bool = False) -> SessionStart:
        self.started.append(request)
        return SessionStart.from_ssm_response(self.response, endpoint_url=self.endpoint_url,
                                              require_stream=require_stream)

    def terminate(self, session_id: str, region: str) -> None:
        self.terminated.append((session_id, region))
        if self.terminate_error:
            raise self.terminate_error


class ScriptStrategy:
    """Runs a Python snippet in place of the tunnel binary."""

    def __init__(self, script: str, session_id: str | None = "sess-abc"):
        self.script = textwrap.dedent(script)
        self.session_id = session_id

    def prepare(self, request: TunnelRequest) -> PreparedLaunch:
        return PreparedLaunch(sys.executable, ("-c", self.script), self.session_id)


@pytest.fixture
def request_() -> TunnelRequest:
    return TunnelRequest(target="i-123", host="db.internal", local_port="8080",
                         remote_port="5432", region="us-east-1")


@pytest.fixture
def session_control() -> FakeSessionControl:
    return FakeSessionControl()


@pytest.fixture
def state() -> MemoryState:
    return MemoryState()


@pytest.fixture
def sleeper() -> Iterator[subprocess.Popen]:
    """A detached long-running process, killed at teardown if still alive."""
    process = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(30)"],
        start_new_session=True,
    )
    yield process
    if process.poll() is None:
        process.kill()
    process.wait()
