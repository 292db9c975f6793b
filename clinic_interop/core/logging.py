import logging
import sys

import structlog
from pythonjsonlogger import jsonlogger

from ..config import get_settings


def setup_logging():
    """Structured logging setup for the messaging pipeline"""
    settings = get_settings()

    if settings.json_logs:
        formatter = jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s"
        )
        renderer = structlog.processors.JSONRenderer()
    else:
        formatter = logging.Formatter("%(levelname)-8s %(name)s: %(message)s")
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Setup root logger
    logger = logging.getLogger()
    for handler in list(logger.handlers):
        if getattr(handler, "_clinic_interop", False):
            logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler._clinic_interop = True
    logger.addHandler(handler)
    logger.setLevel(settings.log_level.upper())

    return structlog.get_logger()
