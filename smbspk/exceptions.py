"""Error hierarchy for smbspk.

Each error carries a ``context`` dict (host, port, step, name, ...) that is
appended to ``str(err)`` so a single log line says where a run stopped.
"""

from typing import Any, Dict, Optional

_MAX_CONTEXT_VALUE = 50


def _clip(value: Any) -> Any:
    if isinstance(value, str) and len(value) > _MAX_CONTEXT_VALUE:
        return value[: _MAX_CONTEXT_VALUE - 3] + "..."
    return value


class SpkError(Exception):
    """Root of every error raised by smbspk.

    ``original_exception`` keeps the OS or asyncio error that triggered this
    one, when there was one.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context) if context else {}
        self.original_exception = original_exception

    @property
    def message(self) -> str:
        """The message without context decoration."""
        return self.args[0] if self.args else ""

    def __str__(self) -> str:
        if not self.context:
            return self.message
        pairs = ", ".join(f"{k}={_clip(v)}" for k, v in self.context.items())
        return f"{self.message} (Context: {pairs})"

    def __repr__(self) -> str:
        text = f"{type(self).__name__}({self.message!r})"
        return f"{text} (context={self.context!r})" if self.context else text

    def add_context(self, key: str, value: Any) -> None:
        self.context[key] = value

    def get_context(self, key: str, default: Any = None) -> Any:
        return self.context.get(key, default)


class ValidationError(SpkError):
    """Malformed or missing caller input, detected before any connection."""

    pass


class ConnectFailed(SpkError):
    """Endpoint unreachable or its name could not be resolved."""

    pass


class SessionIOError(SpkError):
    """Write failure or unexpected close of an open connection."""

    pass


class NotConnectedError(SpkError):
    """Error raised when I/O is attempted on a closed connection."""

    pass


class ProtocolTimeout(SpkError):
    """No expected pattern arrived within a step's time budget."""

    @property
    def step(self) -> Optional[int]:
        return self.context.get("step")


class RemoteRejected(SpkError):
    """The remote peer reported a recognised error condition.

    ``diagnostic`` holds the peer's wording verbatim.
    """

    def __init__(
        self,
        message: str,
        diagnostic: str = "",
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message, context, original_exception)
        self.diagnostic = diagnostic


class TransferFailed(SpkError):
    """Artifact missing on the remote store or a non-retryable transfer error."""

    def __init__(
        self,
        message: str,
        diagnostic: str = "",
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message, context, original_exception)
        self.diagnostic = diagnostic
