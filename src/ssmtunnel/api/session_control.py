import json
from typing import Any, Protocol, Self

import boto3
from botocore.config import Config
from loguru import logger
from pydantic import BaseModel, SecretStr

from ssmtunnel import __version__
from ssmtunnel.consts import port_forwarding_document
from ssmtunnel.errors import MissingSessionFields
from ssmtunnel.settings import TunnelRequest
from ssmtunnel.types import Region, SessionId


class SessionStart(BaseModel):
    """
    The parts of a StartSession response the tunnel needs.
    """
    session_id: SessionId
    stream_url: str | None = None
    token_value: SecretStr | None = None
    endpoint_url: str | None = None

    @classmethod
    def from_ssm_response(cls, data: dict[str, Any], endpoint_url: str | None = None,
                          require_stream: bool = False) -> Self:
        required = ["SessionId", "StreamUrl", "TokenValue"] if require_stream else ["SessionId"]
        if missing := [name for name in required if not data.get(name)]:
            raise MissingSessionFields(*missing, session_id=data.get("SessionId") or None)

        return cls(
            session_id=data["SessionId"],
            stream_url=data.get("StreamUrl"),
            token_value=data.get("TokenValue"),
            endpoint_url=endpoint_url,
        )

    def plugin_payload(self) -> str:
        """The response JSON in the form session-manager-plugin expects as its first argument."""
        return json.dumps({
            "SessionId": self.session_id,
            "StreamUrl": self.stream_url,
            "TokenValue": self.token_value.get_secret_value() if self.token_value else None,
        })


def port_forwarding_parameters(request: TunnelRequest) -> dict[str, list[str]]:
    return {
        "host": [request.host],
        "portNumber": [request.remote_port],
        "localPortNumber": [request.local_port],
    }


class SessionControl(Protocol):
    def start(self, request: TunnelRequest, require_stream: bool = False) -> SessionStart: ...

    def terminate(self, session_id: SessionId, region: Region) -> None: ...


class SSMSessionControl:
    """Start and terminate Session Manager sessions through boto3."""

    def __init__(self, session: boto3.Session | None = None):
        self.session = session or boto3.Session()
        self._clients: dict[Region, Any] = {}

    def client(self, region: Region):
        if region not in self._clients:
            self._clients[region] = self.session.client(
                "ssm", region_name=region,
                config=Config(user_agent_extra=f"ssm-tunnel/{__version__}"))
        return self._clients[region]

    def start(self, request: TunnelRequest, require_stream: bool = False) -> SessionStart:
        client = self.client(request.region)
        logger.info(f"Starting SSM session to {request.host}:{request.remote_port} via {request.target}")
        response = client.start_session(
            Target=request.target,
            DocumentName=port_forwarding_document,
            Parameters=port_forwarding_parameters(request),
        )
        return SessionStart.from_ssm_response(
            response, endpoint_url=client.meta.endpoint_url, require_stream=require_stream)

    def terminate(self, session_id: SessionId, region: Region) -> None:
        self.client(region).terminate_session(SessionId=session_id)
        logger.info(f"SSM session {session_id} terminated")
