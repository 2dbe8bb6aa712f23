import logging
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Install console (and optional daily rotating file) handlers on the root logger.

    Calling it again replaces the handlers it installed before, so repeated
    CLI invocations in one process do not duplicate output.
    """
    root = logging.getLogger()
    numeric = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level!r}")
    root.setLevel(numeric)

    for handler in list(root.handlers):
        if getattr(handler, "_allocation_handler", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console._allocation_handler = True  # type: ignore[attr-defined]
    root.addHandler(console)

    if log_file:
        file_handler = TimedRotatingFileHandler(log_file, when="midnight", backupCount=7, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler._allocation_handler = True  # type: ignore[attr-defined]
        root.addHandler(file_handler)
    return root
