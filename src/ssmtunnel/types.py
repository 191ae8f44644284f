import datetime
import os
from enum import StrEnum, auto
from typing import NamedTuple, TypeAlias

SessionId = str
Region = str
Pid = int

CmdArg = str | os.PathLike[str]
CmdArgs = tuple[CmdArg, ...]


class OutputChannel(StrEnum):
    STDOUT = auto()
    STDERR = auto()


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class ProcessOutput(NamedTuple):
    line: str
    channel: OutputChannel
    timestamp: datetime.datetime

    @classmethod
    def from_bytes(cls, data: bytes, channel: OutputChannel) -> "ProcessOutput":
        return cls(data.decode(errors="replace").rstrip("\r\n"), channel, _now())

    def __str__(self) -> str:
        return f"[{self.timestamp:%H:%M:%S}] [{self.channel}] {self.line}"


class ProcessExit(NamedTuple):
    code: int | None
    timestamp: datetime.datetime

    @classmethod
    def now(cls, code: int | None) -> "ProcessExit":
        return cls(code, _now())


ProcessEvent: TypeAlias = ProcessOutput | ProcessExit
