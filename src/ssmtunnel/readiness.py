"""Classify tunnel process output lines.

The marker strings are a contract with ``session-manager-plugin`` (and the
``aws ssm start-session`` wrapper around it). They live here, versioned, so a
change in the plugin's wording only touches this module.
"""

import re
from dataclasses import dataclass, field
from enum import StrEnum, auto

from ssmtunnel.types import OutputChannel, SessionId


class VerdictKind(StrEnum):
    READY = auto()
    ERROR = auto()
    SESSION = auto()
    IGNORE = auto()


@dataclass(frozen=True)
class Verdict:
    kind: VerdictKind
    line: str
    session_id: SessionId | None = None


_ignore = VerdictKind.IGNORE


@dataclass(frozen=True)
class ReadinessMarkers:
    version: str
    port_opened: re.Pattern[str]
    waiting: re.Pattern[str]
    session_started: re.Pattern[str]
    error_markers: tuple[str, ...] = field(default=("error", "fail"))


session_manager_plugin_v1 = ReadinessMarkers(
    version="1",
    # Port 8080 opened for sessionId sess-abc.
    port_opened=re.compile(r"Port \d+ opened(?: for sessionId (?P<session_id>[\w.@:-]+?)\.?(?:\s|$))?"),
    # Waiting for connections...
    waiting=re.compile(r"Waiting for connections"),
    # Starting session with SessionId: sess-abc
    session_started=re.compile(r"Starting session with SessionId: (?P<session_id>\S+)"),
)


class ReadinessDetector:
    """Classifies lines of one tunnel process.

    The plugin prints the port line and the waiting line either together or one after
    the other, so a port line seen on stdout is remembered until the waiting line
    arrives. Call ``reset`` before reusing a detector for another process.
    """

    def __init__(self, markers: ReadinessMarkers = session_manager_plugin_v1):
        self.markers = markers
        self._opened: re.Match[str] | None = None

    def reset(self) -> None:
        self._opened = None

    def is_ready(self, line: str) -> bool:
        return bool(self.markers.port_opened.search(line) and self.markers.waiting.search(line))

    def is_error(self, line: str) -> bool:
        lowered = line.casefold()
        return any(marker in lowered for marker in self.markers.error_markers)

    def classify(self, line: str, channel: OutputChannel) -> Verdict:
        match channel:
            case OutputChannel.STDOUT:
                if opened := self.markers.port_opened.search(line):
                    self._opened = opened
                if self._opened and self.markers.waiting.search(line):
                    return Verdict(VerdictKind.READY, line, self._opened.group("session_id"))
                if started := self.markers.session_started.search(line):
                    return Verdict(VerdictKind.SESSION, line, started.group("session_id"))
                if opened and opened.group("session_id"):
                    return Verdict(VerdictKind.SESSION, line, opened.group("session_id"))
            case OutputChannel.STDERR:
                if self.is_error(line):
                    return Verdict(VerdictKind.ERROR, line)
        return Verdict(_ignore, line)
