from dataclasses import dataclass

from loguru import logger

from ssmtunnel.binary.process import ProcessContext
from ssmtunnel.errors import CommandFailed
from ssmtunnel.types import OutputChannel, ProcessOutput

shell = "/bin/sh"


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def check(self) -> "CommandResult":
        if not self.ok:
            raise CommandFailed(self)
        return self


async def collect(context: ProcessContext, log_level: str = "INFO") -> CommandResult:
    """Run ``context`` to completion, logging each line and keeping all of it."""
    context.capture = True
    async with context as handle:
        async for event in handle.events():
            if isinstance(event, ProcessOutput):
                level = log_level if event.channel is OutputChannel.STDOUT else "WARNING"
                logger.opt(raw=True).log(level, event.line + "\n")

    return CommandResult(
        handle.return_code or 0,
        "\n".join(handle.stdout_lines).strip(),
        "\n".join(handle.stderr_lines).strip(),
    )


async def run_command(command: str) -> CommandResult:
    """Run a shell command while the tunnel is up. No timeout: the caller owns its duration."""
    logger.info(f"Running command: {command}")
    result = await collect(ProcessContext(shell, "-c", command))
    logger.info(f"Command exited with code {result.exit_code}")
    return result
