"""Ordered transcript of a session: connects, lines, negotiation, step outcomes."""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

__all__ = ["TraceEvent", "TraceRecorder"]


@dataclass(frozen=True)
class TraceEvent:
    elapsed: float
    kind: str
    fields: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {"ts": round(self.elapsed, 6), "kind": self.kind}
        entry.update(self.fields)
        return entry


class TraceRecorder:
    """Collects :class:`TraceEvent` entries in the order they happen.

    Components accept ``recorder=None`` and skip recording in that case, so
    the recorder only costs anything when ``--trace`` is given. ``elapsed``
    is measured from construction on the monotonic clock.
    """

    def __init__(self) -> None:
        self._origin = time.monotonic()
        self._log: List[TraceEvent] = []

    def __len__(self) -> int:
        return len(self._log)

    def __iter__(self) -> Iterator[TraceEvent]:
        return iter(list(self._log))

    def record(self, kind: str, **fields: Any) -> None:
        self._log.append(TraceEvent(time.monotonic() - self._origin, kind, fields))

    def events(self) -> List[TraceEvent]:
        return list(self._log)

    def kinds(self) -> List[str]:
        return [event.kind for event in self._log]

    def to_json(self, *, indent: Optional[int] = None) -> str:
        payload = [event.as_dict() for event in self._log]
        return json.dumps(payload, indent=indent, sort_keys=True)

    # event shortcuts used by the connection, filter and driver

    def connect(self, host: str, port: int) -> None:
        self.record("connect", host=host, port=port)

    def sent(self, text: str) -> None:
        self.record("send", text=text)

    def received(self, text: str) -> None:
        self.record("receive", text=text)

    def telnet(self, direction: str, command: str, option: int) -> None:
        self.record("telnet", direction=direction, command=command, option=option)

    def matched(self, step: int, name: str, pattern_index: int) -> None:
        self.record("match", step=step, name=name, pattern_index=pattern_index)

    def timeout(self, step: int, name: str) -> None:
        self.record("timeout", step=step, name=name)

    def error(self, message: str) -> None:
        self.record("error", message=message)

    def close(self) -> None:
        self.record("close")
