# Code assistant package init
import logging
import os

__version__ = "1.0.0"


def _configure_logging() -> None:
    level_name = (os.getenv("CODEASSIST_LOG_LEVEL") or "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logger = logging.getLogger("codeassist")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[CODEASSIST][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    backend_level_name = (os.getenv("CODEASSIST_BACKEND_LOG_LEVEL") or level_name).upper()
    backend_level = getattr(logging, backend_level_name, level)
    logging.getLogger("codeassist.backend").setLevel(backend_level)


def set_log_level(level_name: str) -> None:
    level = getattr(logging, level_name.upper(), logging.WARNING)
    logging.getLogger("codeassist").setLevel(level)
    logging.getLogger("codeassist.backend").setLevel(level)


_configure_logging()
