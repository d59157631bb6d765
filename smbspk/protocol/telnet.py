"""Incremental telnet command filter.

The dialogue only ever needs the text stream, so every option the peer
offers or requests is refused and the command bytes are removed from the
data handed to the pattern matcher.
"""

import logging
from typing import List, Optional, Tuple

from .trace_recorder import TraceRecorder
from .utils import COMMAND_NAMES, DO, DONT, IAC, SB, SE, WILL, WONT, refusal_for

logger = logging.getLogger(__name__)


class TelnetFilter:
    """Separates telnet commands from data across arbitrary chunk boundaries."""

    def __init__(self, recorder: Optional[TraceRecorder] = None) -> None:
        self._pending = b""
        self.recorder = recorder

    @property
    def pending(self) -> bytes:
        """Bytes held back because a command was split across reads."""
        return self._pending

    def feed(self, data: bytes) -> Tuple[bytes, List[bytes]]:
        """
        Process a received chunk.

        Returns:
            (cleaned data, list of refusal replies to send back)
        """
        buf = self._pending + data
        self._pending = b""
        out = bytearray()
        replies: List[bytes] = []
        pos = 0
        end = len(buf)
        while pos < end:
            mark = buf.find(IAC, pos)
            if mark == -1:
                out += buf[pos:]
                break
            out += buf[pos:mark]
            consumed = self._command(buf, mark, out, replies)
            if consumed == 0:
                # split command; wait for the next chunk
                self._pending = buf[mark:]
                break
            pos = mark + consumed
        return bytes(out), replies

    def _command(
        self, buf: bytes, at: int, out: bytearray, replies: List[bytes]
    ) -> int:
        """Handle the command starting at ``buf[at]``; 0 means incomplete."""
        if at + 1 >= len(buf):
            return 0
        verb = buf[at + 1]
        if verb == IAC:
            out.append(IAC)
            return 2
        if verb in (DO, DONT, WILL, WONT):
            if at + 2 >= len(buf):
                return 0
            self._negotiate(verb, buf[at + 2], replies)
            return 3
        if verb == SB:
            close = buf.find(bytes([IAC, SE]), at + 2)
            if close == -1:
                return 0
            logger.debug(f"[TELNET] Ignoring subnegotiation {buf[at + 2:close].hex()}")
            return close + 2 - at
        # GA, NOP and the other two-byte commands
        return 2

    def _negotiate(self, cmd: int, option: int, replies: List[bytes]) -> None:
        name = COMMAND_NAMES[cmd]
        logger.debug(f"[TELNET] Received {name} {option}")
        if self.recorder is not None:
            self.recorder.telnet("in", name, option)
        reply = refusal_for(cmd, option)
        if reply is not None:
            replies.append(reply)
            if self.recorder is not None:
                self.recorder.telnet("out", COMMAND_NAMES[reply[1]], option)
