import os
import uuid
from pathlib import Path
from typing import Protocol

import typer

from ssmtunnel.binary.command import CommandResult


class Outputs(Protocol):
    def set(self, name: str, value: str) -> None: ...


class ConsoleOutputs:
    def set(self, name: str, value: str) -> None:
        typer.echo(f"{name}={value}")


class GithubOutputs:
    def __init__(self, path: Path):
        self.path = path

    def set(self, name: str, value: str) -> None:
        delimiter = f"ghadelimiter_{uuid.uuid4()}"
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(f"{name}<<{delimiter}{os.linesep}{value}{os.linesep}{delimiter}{os.linesep}")


def open_outputs() -> Outputs:
    if target := os.environ.get("GITHUB_OUTPUT"):
        return GithubOutputs(Path(target))
    return ConsoleOutputs()


def publish(result: CommandResult, outputs: Outputs) -> None:
    outputs.set("exit-code", str(result.exit_code))
    outputs.set("stdout", result.stdout)
    outputs.set("stderr", result.stderr)
