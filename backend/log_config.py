import logging
import os
import sys
from pathlib import Path

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <5}</level> | "
    "<cyan>{extra[module_name]}</cyan> - {message}"
)

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = {
    # Misfire warnings for the once-a-minute jobs
    "apscheduler.executors.default": logging.ERROR,
    # Job added/removed messages
    "apscheduler.scheduler": logging.WARNING,
}


def add_module_name(record):
    """Ensure every record has module_name in extra."""
    if "module_name" not in record["extra"]:
        record["extra"]["module_name"] = f"{record['name']}:{record['line']}"
    return True


# Intercept standard logging
class InterceptHandler(logging.Handler):
    def emit(self, record):
        # Get corresponding Loguru level if it exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        if record.name == "root":
            module_name = record.module
        elif "." in record.name:
            module_name = record.name
        else:
            module_name = Path(record.pathname).stem

        message = record.getMessage()
        if record.exc_info:
            logger.bind(module_name=f"{module_name}:{record.lineno}").opt(
                exception=record.exc_info
            ).log(level, message)
        else:
            logger.bind(module_name=f"{module_name}:{record.lineno}").log(level, message)


def setup_logging(level: str | None = None) -> None:
    """Route all logging through a single Loguru stderr sink."""
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()

    # Remove default handler
    logger.remove()
    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=level,
        colorize=True,
        filter=add_module_name,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    for name, logger_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(logger_level)

    # Existing loggers must propagate to the intercept handler
    for name in list(logging.root.manager.loggerDict.keys()):
        if name not in QUIET_LOGGERS:
            logging.getLogger(name).handlers = []
            logging.getLogger(name).propagate = True


setup_logging()
