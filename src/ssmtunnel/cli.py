import asyncio
import sys

import typer
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from ssmtunnel.api.session_control import SSMSessionControl
from ssmtunnel.binary.binary import BinaryWrapper
from ssmtunnel.binary.command import run_command
from ssmtunnel.cleanup import CleanupCoordinator, CleanupReport
from ssmtunnel.errors import StateReadError, TunnelError
from ssmtunnel.log.config import isolated_logging
from ssmtunnel.outputs import open_outputs, publish
from ssmtunnel.settings import Settings, TunnelRequest
from ssmtunnel.state import FileState, MemoryState, StateChannel, open_state
from ssmtunnel.tunnel import TunnelLauncher, TunnelSession

app = typer.Typer(help="Open and tear down AWS SSM port-forwarding tunnels.")

console = Console(stderr=True)

verbose_option = typer.Option(False, "--verbose", "-v", help="Show full tunnel process logs")


def display_tunnel_info(tunnel: TunnelSession, request: TunnelRequest) -> None:
    content = f"[bold green]Tunnel is ready![/bold green]\n\n" \
              f"localhost:{request.local_port} -> {request.host}:{request.remote_port}\n" \
              f"via {request.target} ({request.region})\n" \
              f"Session: {tunnel.session_id or 'unknown'}, pid {tunnel.pid}"

    panel = Panel(
        content,
        title="[bold blue]SSM Tunnel[/bold blue]",
        border_style="green",
        expand=False,
        padding=(1, 2)
    )
    console.print(panel)


def _settings(timeout: float | None, mode: str | None) -> Settings:
    overrides: dict[str, object] = {}
    if timeout is not None:
        overrides["readiness_timeout"] = timeout
    if mode is not None:
        overrides["mode"] = mode
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise typer.BadParameter(str(e)) from e


def _request(target: str, host: str, local_port: str, remote_port: str, region: str,
             command: str | None) -> TunnelRequest:
    try:
        return TunnelRequest(target=target, host=host, local_port=local_port,
                             remote_port=remote_port, region=region, command=command)
    except ValidationError as e:
        raise typer.BadParameter(str(e)) from e


def _fail(error: Exception) -> typer.Exit:
    logger.error(str(error))
    return typer.Exit(code=1)


async def _launch(request: TunnelRequest, settings: Settings, state: StateChannel) -> None:
    if isinstance(state, FileState) and state.path.exists():
        logger.warning(f"Discarding leftover tunnel state in {state.path}")
        state.clear()

    session_control = SSMSessionControl()
    launcher = TunnelLauncher.from_settings(settings, state, session_control)
    tunnel = await launcher.launch(request)
    if sys.stderr.isatty():
        display_tunnel_info(tunnel, request)

    if request.command:
        result = await run_command(request.command)
        publish(result, open_outputs())
        result.check()


async def _cleanup(state: StateChannel) -> CleanupReport:
    report = await CleanupCoordinator(state, SSMSessionControl()).run()
    if isinstance(state, FileState):
        state.clear()
    return report


target_option = typer.Option(..., envvar="SSM_TUNNEL_TARGET", help="Instance or managed node id")
host_option = typer.Option(..., envvar="SSM_TUNNEL_HOST", help="Remote host reachable from the target")
local_port_option = typer.Option(..., "--local-port", envvar="SSM_TUNNEL_LOCAL_PORT")
remote_port_option = typer.Option(..., "--remote-port", envvar="SSM_TUNNEL_REMOTE_PORT")
region_option = typer.Option(..., envvar=["SSM_TUNNEL_REGION", "AWS_REGION"], help="AWS region")
command_option = typer.Option(None, "--command", "-c", help="Shell command to run once the tunnel is ready")
timeout_option = typer.Option(None, "--timeout", help="Seconds to wait for readiness")
mode_option = typer.Option(None, "--mode", help="'plugin' or 'cli'")


@app.command()
def start(
        target: str = target_option,
        host: str = host_option,
        local_port: str = local_port_option,
        remote_port: str = remote_port_option,
        region: str = region_option,
        command: str | None = command_option,
        timeout: float | None = timeout_option,
        mode: str | None = mode_option,
        verbose: bool = verbose_option,
):
    """Open the tunnel and leave it running for a later 'stop'."""
    request = _request(target, host, local_port, remote_port, region, command)
    settings = _settings(timeout, mode)
    with isolated_logging(verbose, settings.log_dir):
        try:
            asyncio.run(_launch(request, settings, open_state(settings)))
        except TunnelError as e:
            raise _fail(e) from e


@app.command()
def stop(verbose: bool = verbose_option):
    """Stop the tunnel process and terminate the SSM session recorded by 'start'."""
    settings = _settings(None, None)
    with isolated_logging(verbose, settings.log_dir):
        try:
            asyncio.run(_cleanup(open_state(settings)))
        except StateReadError as e:
            raise _fail(e) from e


@app.command()
def run(
        target: str = target_option,
        host: str = host_option,
        local_port: str = local_port_option,
        remote_port: str = remote_port_option,
        region: str = region_option,
        command: str | None = command_option,
        timeout: float | None = timeout_option,
        mode: str | None = mode_option,
        verbose: bool = verbose_option,
):
    """Open the tunnel, run the command, then tear everything down."""
    request = _request(target, host, local_port, remote_port, region, command)
    settings = _settings(timeout, mode)
    # Both phases share this process, so the state never needs to leave memory
    state = MemoryState()
    with isolated_logging(verbose, settings.log_dir):
        try:
            asyncio.run(_launch(request, settings, state))
        except TunnelError as e:
            raise _fail(e) from e
        finally:
            asyncio.run(_cleanup(state))


@app.command()
def version(plugin: str = typer.Option("session-manager-plugin", help="Plugin binary")):
    """Show the session-manager-plugin version."""
    try:
        v = asyncio.run(BinaryWrapper(plugin).version())
    except TunnelError as e:
        raise _fail(e) from e
    typer.echo(v)
