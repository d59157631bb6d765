"""
Centralized error handling utilities for connection operations.

Translates socket-level failures into the smbspk taxonomy so the dialogue
layers only ever see SpkError subclasses.
"""

import asyncio
import logging
from typing import Any, Dict, NoReturn, Optional

from ..exceptions import ConnectFailed, SessionIOError

logger = logging.getLogger(__name__)


class safe_socket_operation:
    """
    Async context manager for socket reads and writes on an open connection.

    Catches OSError and asyncio.IncompleteReadError; logs and raises
    SessionIOError with the original message and the supplied context.
    Timeouts propagate unchanged.
    """

    def __init__(self, operation: str, context: Optional[Dict[str, Any]] = None):
        self.operation = operation
        self.context = context or {}

    async def __aenter__(self) -> "safe_socket_operation":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_type is None or issubclass(exc_type, asyncio.TimeoutError):
            # Timeouts are a normal outcome of a bounded read
            return None
        if issubclass(exc_type, (OSError, asyncio.IncompleteReadError)):
            logger.error(f"Socket {self.operation} failed: {exc_val}")
            raise SessionIOError(
                f"{self.operation} failed: {exc_val}",
                context={"operation": self.operation, **self.context},
                original_exception=exc_val,
            ) from exc_val
        return None


def raise_connect_failed(host: str, port: int, exc: Exception) -> NoReturn:
    """Raise ConnectFailed for ``host:port`` wrapping ``exc``."""
    if isinstance(exc, asyncio.TimeoutError):
        reason = "connection timed out"
    else:
        reason = str(exc) or exc.__class__.__name__
    logger.error(f"Connection to {host}:{port} failed: {reason}")
    raise ConnectFailed(
        f"Unable to connect to {host}:{port}: {reason}",
        context={"host": host, "port": port},
        original_exception=exc,
    ) from exc
