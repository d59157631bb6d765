"""
Tagged log helpers shared by the connection, dialogue and transfer layers.

Every line carries a bracketed area tag ([CONNECTION], [DIALOGUE], [DATA],
[TRANSFER]) so a run can be followed with a plain grep.
"""

import logging
from typing import Optional


def _suffix(sep: str, text: Optional[str]) -> str:
    return f"{sep}{text}" if text else ""


def log_connection_event(
    logger: logging.Logger, event: str, host: str = "", port: int = 0
) -> None:
    """Log an open/close on a control connection."""
    where = f" - {host}:{port}" if host and port else ""
    logger.info(f"[CONNECTION] {event}{where}")


def log_data_processing(logger: logging.Logger, direction: str, text: str = "") -> None:
    """Debug-log a line crossing the wire, already shortened by the caller."""
    logger.debug(f"[DATA] {direction}{_suffix(' - ', text)}")


def log_step_event(
    logger: logging.Logger, step: int, name: str, event: str, details: str = ""
) -> None:
    """Log progress of one dialogue step; ``step_name`` is attached for JSON logs."""
    logger.info(
        f"[DIALOGUE] step {step} ({name}) {event}{_suffix(': ', details)}",
        extra={"step": step, "step_name": name},
    )


def log_step_error(
    logger: logging.Logger, step: int, name: str, error: Exception
) -> None:
    logger.error(
        f"[DIALOGUE] step {step} ({name}) failed: {error}",
        extra={"step": step, "step_name": name},
    )


def log_transfer_event(logger: logging.Logger, event: str, details: str = "") -> None:
    logger.info(f"[TRANSFER] {event}{_suffix(': ', details)}")
