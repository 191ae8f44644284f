"""Key-value state handed from the launch invocation to the cleanup invocation."""

import json
import os
import uuid
from pathlib import Path
from typing import Protocol

from loguru import logger
from platformdirs import user_state_dir

from ssmtunnel.consts import APP_NAME, AUTHOR
from ssmtunnel.errors import StateError, StateReadError
from ssmtunnel.settings import Settings


class StateChannel(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryState:
    def __init__(self, values: dict[str, str] | None = None):
        self.values = dict(values or {})

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def set(self, key: str, value: str) -> None:
        self.values[key] = value


class FileState:
    """A JSON object in a file, one file per state name."""

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def named(cls, name: str, base_dir: Path | None = None) -> "FileState":
        base = base_dir or Path(user_state_dir(APP_NAME, AUTHOR))
        return cls(base / f"{name}.json")

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StateReadError(f"Could not read state from {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StateReadError(f"State file {self.path} does not hold a JSON object")
        return {str(k): str(v) for k, v in data.items()}

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class GithubActionsState:
    """Action state: written to the ``GITHUB_STATE`` file, read back as ``STATE_<key>``."""

    def __init__(self, state_file: Path | None = None, environ: dict[str, str] | None = None):
        self.environ = os.environ if environ is None else environ
        self.state_file = state_file

    def get(self, key: str) -> str | None:
        return self.environ.get(f"STATE_{key}") or None

    def set(self, key: str, value: str) -> None:
        target = self.state_file or self.environ.get("GITHUB_STATE")
        if not target:
            raise StateError("GITHUB_STATE is not set; not running inside GitHub Actions")
        delimiter = f"ghadelimiter_{uuid.uuid4()}"
        with Path(target).open("a", encoding="utf-8") as handle:
            handle.write(f"{key}<<{delimiter}{os.linesep}{value}{os.linesep}{delimiter}{os.linesep}")


def open_state(settings: Settings) -> StateChannel:
    backend = settings.state_backend
    if backend == "auto":
        backend = "github" if os.environ.get("GITHUB_STATE") else "file"
    logger.debug(f"Using {backend} state '{settings.state_name}'")
    if backend == "github":
        return GithubActionsState()
    return FileState.named(settings.state_name)
