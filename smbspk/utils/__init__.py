"""Shared helpers for smbspk."""

from .logging_utils import (
    log_connection_event,
    log_data_processing,
    log_step_error,
    log_step_event,
    log_transfer_event,
)

__all__ = [
    "log_connection_event",
    "log_data_processing",
    "log_step_error",
    "log_step_event",
    "log_transfer_event",
]
