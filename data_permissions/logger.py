import structlog
import sys

from bento_lib.logging import log_level_from_str
from fastapi import Depends
from structlog.stdlib import BoundLogger
from typing import Annotated

from .config import ConfigDependency
from .constants import SERVICE_ARTIFACT

__all__ = [
    "get_logger",
    "LoggerDependency",
]


def get_logger(config: ConfigDependency) -> BoundLogger:
    # Level filtering happens in the bound logger itself, so debug calls are cheap when disabled. Logs go to stderr,
    # leaving stdout to CLI output.
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(log_level_from_str(config.log_level)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
    return structlog.get_logger(SERVICE_ARTIFACT)


LoggerDependency = Annotated[BoundLogger, Depends(get_logger)]
