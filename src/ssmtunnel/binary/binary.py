import os

from ssmtunnel.binary.command import CommandResult, collect
from ssmtunnel.binary.process import ProcessContext


class BinaryWrapper:

    def __init__(self, binary: str | os.PathLike[str]):
        self.binary = binary

    async def execute_await_response(self, *args: str) -> CommandResult:
        # Short-lived helper calls: output is only interesting in debug logs
        return await collect(ProcessContext(self.binary, *args), log_level="DEBUG")

    def execute_streaming_response(self, *args: str, detached: bool = False, **kwargs) -> ProcessContext:
        return ProcessContext(self.binary, *args, detached=detached, **kwargs)

    async def version(self) -> str:
        result = await self.execute_await_response("--version")
        return result.check().stdout
