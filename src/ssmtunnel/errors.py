from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ssmtunnel.binary.command import CommandResult


class TunnelError(Exception):
    """Base for every error that aborts a launch invocation."""


class ProcessStartError(TunnelError):
    pass


class MissingSessionFields(TunnelError):
    def __init__(self, *fields: str, session_id: str | None = None):
        self.fields = fields
        self.session_id = session_id
        super().__init__(
            f"Failed to start SSM session: {', '.join(fields)} missing from the response."
        )


class ReadinessTimeout(TunnelError):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Tunnel was not ready after {timeout:g} seconds.")


class ErrorPatternDetected(TunnelError):
    def __init__(self, line: str):
        self.line = line
        super().__init__(f"Tunnel process reported an error: {line}")


class ProcessExitedPrematurely(TunnelError):
    def __init__(self, exit_code: int | None):
        self.exit_code = exit_code
        super().__init__(f"Tunnel process exited with code {exit_code} before it was ready.")


class OutputWatchFailed(TunnelError):
    def __init__(self, cause: BaseException | None):
        self.cause = cause
        super().__init__(f"Lost the tunnel process output before it was ready: {cause}")


class CommandFailed(TunnelError):
    def __init__(self, result: CommandResult):
        self.result = result
        super().__init__(f"Command failed with exit code {result.exit_code}.")


class StateError(TunnelError):
    pass


class StateReadError(StateError):
    pass


class CleanupWarning(Exception):
    """A cleanup step that did not succeed. Recorded and logged, never raised."""

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"{step} failed: {cause}")
