import subprocess

import pytest

from ssmtunnel.cleanup import CleanupCoordinator
from ssmtunnel.consts import process_pid_key, region_key, session_id_key
from ssmtunnel.errors import StateReadError
from ssmtunnel.state import MemoryState
from tests.conftest import FakeSessionControl


def _state(process: subprocess.Popen | None = None, session_id: str | None = "sess-abc",
           region: str | None = "us-east-1") -> MemoryState:
    values = {}
    if process is not None:
        values[process_pid_key] = str(process.pid)
    if session_id:
        values[session_id_key] = session_id
    if region:
        values[region_key] = region
    return MemoryState(values)


async def test_empty_state_is_a_noop(session_control):
    report = await CleanupCoordinator(MemoryState(), session_control).run()

    assert report.empty
    assert session_control.started == []
    assert session_control.terminated == []


async def test_stops_process_and_session(sleeper, session_control):
    report = await CleanupCoordinator(_state(sleeper), session_control).run()

    assert report.signalled == sleeper.pid
    assert report.terminated == "sess-abc"
    assert report.warnings == []
    assert sleeper.wait(timeout=10) != 0
    assert session_control.terminated == [("sess-abc", "us-east-1")]


async def test_second_run_is_harmless(sleeper, session_control):
    state = _state(sleeper)
    await CleanupCoordinator(state, session_control).run()
    sleeper.wait(timeout=10)

    report = await CleanupCoordinator(state, session_control).run()

    assert report.already_stopped
    assert report.signalled is None
    assert report.warnings == []
    assert len(session_control.terminated) == 2


async def test_failed_session_termination_is_a_warning(sleeper):
    control = FakeSessionControl(terminate_error=RuntimeError("InvalidSessionId"))
    report = await CleanupCoordinator(_state(sleeper), control).run()

    assert report.signalled == sleeper.pid
    assert report.terminated is None
    assert [w.step for w in report.warnings] == ["Terminating SSM session sess-abc"]
    assert isinstance(report.warnings[0].cause, RuntimeError)


async def test_bad_pid_does_not_stop_session_termination(session_control):
    state = MemoryState({process_pid_key: "not-a-pid", session_id_key: "sess-abc", region_key: "us-east-1"})
    report = await CleanupCoordinator(state, session_control).run()

    assert len(report.warnings) == 1
    assert report.terminated == "sess-abc"


async def test_session_without_region_is_a_warning(session_control):
    report = await CleanupCoordinator(_state(region=None), session_control).run()

    assert session_control.terminated == []
    assert len(report.warnings) == 1


async def test_only_pid_recorded(sleeper, session_control):
    report = await CleanupCoordinator(_state(sleeper, session_id=None), session_control).run()

    assert report.signalled == sleeper.pid
    assert session_control.terminated == []


class BrokenState:
    def get(self, key: str) -> str | None:
        raise OSError("disk on fire")

    def set(self, key: str, value: str) -> None:
        raise OSError("disk on fire")


async def test_unreadable_state_is_fatal(session_control):
    with pytest.raises(StateReadError):
        await CleanupCoordinator(BrokenState(), session_control).run()
    assert session_control.terminated == []
