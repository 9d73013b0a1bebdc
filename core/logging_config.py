# WORKFLOW: Logging setup shared by the CLI and sharded workers.
# Used by: cli.main, etl.sharding worker initializer
# Functions:
# 1. configure_logging() - Configure stdlib logging and route structlog through it
#
# Module loggers use logging.getLogger(__name__); pipeline events are emitted
# with structlog and end up on the same stderr handler.

import logging
import sys
from typing import Optional

import structlog

from core.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging and structlog.

    Args:
        level: Log level name, defaults to settings.log_level
    """
    level_name = (level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"], sort_keys=True),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
