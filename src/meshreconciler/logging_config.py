"""
Logging Configuration
Sets up the package logger for import and reconcile runs.
"""
import logging
import sys
from typing import Optional


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None,
                  append: bool = False) -> None:
    """
    Configures the logger for the 'meshreconciler' namespace.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO)
        log_file: Optional path to save logs to a file.
        append: Keep the existing log file contents, so a batch of snapshots
            reconciled one after another shares a single log.
    """
    logger = logging.getLogger("meshreconciler")
    logger.setLevel(level)

    # Repeated calls between snapshots must not stack handlers
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    # Format: Time - Module - Level - Message
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a' if append else 'w', encoding='utf-8')
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.debug(f"Logging initialized (level={logging.getLevelName(level)}, file={log_file}).")
