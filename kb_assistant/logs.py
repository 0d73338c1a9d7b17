"""Logging setup shared by the CLI and the HTTP server."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

DEFAULT_LOGGER_NAMES = ["kb_assistant"]

# Handlers installed by setup_logging, replaced on the next call
_installed: List[tuple] = []


def setup_logging(config, logger_names: Optional[List[str]] = None, verbose: bool = False) -> Optional[Path]:
    """Configure console logging and, if enabled, a rotating debug log file.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        config: AssistantConfig instance
        logger_names: Loggers to configure (defaults to the package logger)
        verbose: Log INFO to the console instead of WARNING

    Returns:
        Path of the debug log file, or None when debug logging is disabled
    """
    logger_names = logger_names or DEFAULT_LOGGER_NAMES
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

    while _installed:
        logger_obj, handler = _installed.pop()
        logger_obj.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    console.setFormatter(formatter)

    file_handler = None
    log_file = None
    if config.DEBUG_LOG:
        log_file = Path(config.DEBUG_LOG_FILE)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=config.DEBUG_LOG_MAX_BYTES,
            backupCount=config.DEBUG_LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)

    for logger_name in logger_names:
        logger_obj = logging.getLogger(logger_name)
        logger_obj.setLevel(logging.DEBUG if file_handler else logging.INFO)
        for handler in (console, file_handler):
            if handler is not None:
                logger_obj.addHandler(handler)
                _installed.append((logger_obj, handler))

    return log_file
