"""Wire-level helpers: telnet filtering, socket error translation, tracing."""

from .telnet import TelnetFilter
from .trace_recorder import TraceRecorder

__all__ = [
    "TelnetFilter",
    "TraceRecorder",
]
