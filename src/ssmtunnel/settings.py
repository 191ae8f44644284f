"""Runtime configuration and the tunnel request model."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ssmtunnel.consts import default_readiness_timeout


class Settings(BaseSettings):
    """Settings read from ``SSM_TUNNEL_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="SSM_TUNNEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    readiness_timeout: float = Field(
        default=default_readiness_timeout,
        gt=0,
        description="Seconds to wait for the tunnel to report it is ready",
    )
    mode: Literal["plugin", "cli"] = Field(
        default="plugin",
        description="'plugin' starts the session via the API and runs session-manager-plugin, "
                    "'cli' runs 'aws ssm start-session'",
    )
    plugin_binary: str = Field(default="session-manager-plugin")
    aws_binary: str = Field(default="aws")
    state_backend: Literal["auto", "file", "github"] = Field(
        default="auto",
        description="'auto' uses GitHub Actions state when GITHUB_STATE is set, a local file otherwise",
    )
    state_name: str = Field(default="default", min_length=1)
    log_dir: Path | None = Field(default=None, description="Directory for log files")
    poll_interval: float = Field(default=0.05, gt=0)


class TunnelRequest(BaseModel):
    """What to forward: ``localhost:local_port`` to ``host:remote_port`` through ``target``."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    target: str = Field(min_length=1)
    host: str = Field(min_length=1)
    local_port: str
    remote_port: str
    region: str = Field(min_length=1)
    command: str | None = None

    @field_validator("local_port", "remote_port", mode="before")
    @classmethod
    def _port(cls, value: object) -> str:
        text = str(value).strip()
        if not text.isdigit() or not 1 <= int(text) <= 65535:
            raise ValueError(f"'{value}' is not a port number between 1 and 65535")
        return text

    @field_validator("command")
    @classmethod
    def _blank_command(cls, value: str | None) -> str | None:
        return value or None
