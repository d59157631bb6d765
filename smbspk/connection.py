"""
Connection handle for smbspk: one exclusively-owned byte stream to a remote
endpoint with blocking send and pattern-matching receive.
"""

import asyncio
import codecs
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Pattern, Sequence, Tuple, Union

from .exceptions import NotConnectedError, SessionIOError
from .protocol.errors import raise_connect_failed, safe_socket_operation
from .protocol.telnet import TelnetFilter
from .protocol.trace_recorder import TraceRecorder
from .protocol.utils import escape_iac, preview
from .utils.logging_utils import log_connection_event, log_data_processing

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class Endpoint:
    """Host and port of a remote service."""

    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class MatchResult:
    """Outcome of a successful ``receive_until``.

    ``index`` is the position of the winning pattern in the list passed to
    ``receive_until``; ``text`` is everything consumed from the buffer, up to
    and including the match.
    """

    index: int
    match: "re.Match[str]"
    text: str

    @property
    def groups(self) -> Tuple[Optional[str], ...]:
        return self.match.groups()

    @property
    def named(self) -> Dict[str, Optional[str]]:
        return self.match.groupdict()

    @property
    def diagnostic(self) -> str:
        """The received line(s) containing the match, stripped."""
        line_start = self.text.rfind("\n", 0, self.match.start()) + 1
        return self.text[line_start:].strip()


class AsyncConnection:
    """
    Asynchronous line-dialogue connection.

    Received bytes are decoded incrementally and accumulated in a text buffer
    that ``receive_until`` searches after every chunk. Telnet commands are
    filtered out (and refused) when ``telnet`` is set.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        endpoint: Endpoint,
        telnet: bool = True,
        recorder: Optional[TraceRecorder] = None,
        encoding: str = "utf-8",
    ) -> None:
        self._reader: Optional[asyncio.StreamReader] = reader
        self._writer: Optional[asyncio.StreamWriter] = writer
        self.endpoint = endpoint
        self.recorder = recorder
        self.encoding = encoding
        self._telnet = TelnetFilter(recorder) if telnet else None
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""
        self._eof = False

    @classmethod
    async def open(
        cls,
        endpoint: Endpoint,
        timeout: Optional[float] = 30.0,
        telnet: bool = True,
        recorder: Optional[TraceRecorder] = None,
    ) -> "AsyncConnection":
        """
        Establish the byte-stream channel.

        Raises:
            ConnectFailed: If the name cannot be resolved, the endpoint is
                unreachable, or the connect does not finish within ``timeout``.
        """
        log_connection_event(logger, "Connecting", endpoint.host, endpoint.port)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(endpoint.host, endpoint.port), timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise_connect_failed(endpoint.host, endpoint.port, e)
        log_connection_event(logger, "Connected", endpoint.host, endpoint.port)
        if recorder is not None:
            recorder.connect(endpoint.host, endpoint.port)
        return cls(reader, writer, endpoint, telnet=telnet, recorder=recorder)

    @property
    def connected(self) -> bool:
        return self._writer is not None

    @property
    def writable(self) -> bool:
        """True while the writer exists and is not closing."""
        return self._writer is not None and not self._writer.is_closing()

    @property
    def buffer(self) -> str:
        """Text received but not yet consumed by a match."""
        return self._buffer

    @property
    def local_address(self) -> Optional[Tuple[Any, ...]]:
        if self._writer is None:
            return None
        return self._writer.get_extra_info("sockname")

    async def send(self, data: Union[bytes, str]) -> None:
        """
        Write ``data`` verbatim, including any line terminator it carries.

        Raises:
            NotConnectedError: If the connection has been closed.
            SessionIOError: If the write fails.
        """
        if self._writer is None:
            raise NotConnectedError(
                "Connection not open.", {"operation": "send", "endpoint": str(self.endpoint)}
            )
        text = data if isinstance(data, str) else data.decode(self.encoding, "replace")
        payload = data.encode(self.encoding) if isinstance(data, str) else data
        if self._telnet is not None:
            payload = escape_iac(payload)
        async with safe_socket_operation("send", {"endpoint": str(self.endpoint)}):
            self._writer.write(payload)
            await self._writer.drain()
        log_data_processing(logger, "Sent", preview(text))
        if self.recorder is not None:
            self.recorder.sent(text)

    async def receive_until(
        self,
        patterns: Sequence[Union[str, Pattern[str]]],
        timeout: Optional[float] = None,
    ) -> Optional[MatchResult]:
        """
        Read until one of ``patterns`` matches the accumulated text.

        Patterns are tested in the given order; the first one that matches
        anywhere in the buffer wins. ``timeout`` of None or <= 0 waits
        indefinitely.

        Returns:
            The match, or None if nothing matched within ``timeout``.

        Raises:
            NotConnectedError: If the connection has been closed.
            SessionIOError: If the peer closes the stream before a match.
        """
        if self._reader is None:
            raise NotConnectedError(
                "Connection not open.",
                {"operation": "receive", "endpoint": str(self.endpoint)},
            )
        compiled = [re.compile(p) if isinstance(p, str) else p for p in patterns]
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None or timeout <= 0 else loop.time() + timeout

        while True:
            result = self._search(compiled)
            if result is not None:
                return result
            if self._eof:
                raise SessionIOError(
                    "Connection closed by remote peer",
                    context={
                        "endpoint": str(self.endpoint),
                        "pending": preview(self._buffer),
                    },
                )
            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
            try:
                async with safe_socket_operation(
                    "receive", {"endpoint": str(self.endpoint)}
                ):
                    chunk = await asyncio.wait_for(
                        self._reader.read(READ_CHUNK_SIZE), remaining
                    )
            except asyncio.TimeoutError:
                return None
            await self._feed(chunk)

    async def _feed(self, chunk: bytes) -> None:
        if not chunk:
            self._eof = True
            self._buffer += self._decoder.decode(b"", final=True)
            return
        if self._telnet is not None:
            chunk, replies = self._telnet.feed(chunk)
            for reply in replies:
                await self._send_raw(reply)
        text = self._decoder.decode(chunk)
        if text:
            log_data_processing(logger, "Received", preview(text))
            if self.recorder is not None:
                self.recorder.received(text)
            self._buffer += text

    async def _send_raw(self, payload: bytes) -> None:
        if not self.writable:
            return
        assert self._writer is not None
        async with safe_socket_operation("send", {"endpoint": str(self.endpoint)}):
            self._writer.write(payload)
            await self._writer.drain()

    def _search(self, compiled: Sequence[Pattern[str]]) -> Optional[MatchResult]:
        for index, pattern in enumerate(compiled):
            match = pattern.search(self._buffer)
            if match is not None:
                text = self._buffer[: match.end()]
                self._buffer = self._buffer[match.end() :]
                return MatchResult(index=index, match=match, text=text)
        return None

    async def close(self) -> None:
        """Release the channel. Idempotent; never raises."""
        writer = self._writer
        self._writer = None
        self._reader = None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Ignoring error while closing {self.endpoint}: {e}")
        log_connection_event(logger, "Closed", self.endpoint.host, self.endpoint.port)
        if self.recorder is not None:
            self.recorder.close()

    async def __aenter__(self) -> "AsyncConnection":
        """Enter async context manager."""
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> None:
        """Exit async context manager."""
        await self.close()
