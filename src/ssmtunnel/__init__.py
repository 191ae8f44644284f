import logging
import sys

from loguru import logger

__version__ = "0.1.0"

# 1. Remove the default Loguru handler (which is set to DEBUG by default)
logger.remove()

# 2. Boot handler: simple format, INFO only until the CLI configures logging
logger.add(
    sys.stderr,
    format="<green>{time:HH:mm:ss}</green> | <level>{message}</level>",
    level=logging.INFO
)
