from __future__ import annotations

import logging
from pathlib import Path


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Configure logging for the entire application."""
    # Get the root logger
    root_logger = logging.getLogger()

    # Remove any existing handlers to avoid duplication
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Console output stays quiet unless verbose; the log file keeps everything
    log_level = logging.DEBUG if verbose else logging.INFO
    root_logger.setLevel(log_level)

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root_logger.addHandler(stream_handler)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            root_logger.warning(f"Cannot write log file {log_file}: {e}")
        else:
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    # Set the logger for the application
    logger = logging.getLogger("wpspin")
    logger.setLevel(log_level)

    if verbose:
        logger.debug("🔍 Verbose logging re-initialized")
