import logging
import os
from typing import Optional


def setup_logging(log_level: Optional[str] = None, log_file: Optional[str] = "app.log"):
    """
    Set up logging configuration for the application.

    The level comes from the argument, then the LOG_LEVEL environment variable,
    then defaults to INFO.
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    log_level = log_level.upper()

    numeric_level = getattr(logging, log_level, None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: list[logging.Handler] = [logging.StreamHandler()]  # Log to console
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s - %(levelname)s - %(name)s:%(lineno)d - %(message)s",
        handlers=handlers,
        force=True,
    )
    logging.debug("Logging configured successfully.")
