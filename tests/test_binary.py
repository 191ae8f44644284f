import sys

import pytest
from loguru import logger

from ssmtunnel.binary.binary import BinaryWrapper
from ssmtunnel.errors import CommandFailed, ProcessStartError


async def test_binary_version():
    version = await BinaryWrapper(sys.executable).version()
    logger.info(f"Interpreter version: {version}")
    assert version.startswith("Python 3")


async def test_failing_version_raises():
    wrapper = BinaryWrapper(sys.executable)
    result = await wrapper.execute_await_response("-c", "import sys; sys.exit(2)")
    assert result.exit_code == 2
    with pytest.raises(CommandFailed):
        result.check()


async def test_missing_binary():
    with pytest.raises(ProcessStartError):
        await BinaryWrapper("/definitely/not/a/real/session-manager-plugin").version()
