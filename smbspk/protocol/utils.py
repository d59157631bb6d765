"""Telnet byte values and text helpers for the line-oriented dialogue."""

from typing import Optional

# RFC 854 commands
IAC = 0xFF
DONT = 0xFE
DO = 0xFD
WONT = 0xFC
WILL = 0xFB
SB = 0xFA
GA = 0xF9
SE = 0xF0

# RFC 855 option codes a host is likely to offer
TELOPT_ECHO = 0x01
TELOPT_TTYPE = 0x18

COMMAND_NAMES = {WILL: "WILL", WONT: "WONT", DO: "DO", DONT: "DONT"}

CRLF = "\r\n"


def refusal_for(command: int, option: int) -> Optional[bytes]:
    """
    Build the refusal for a peer's option request.

    DO is answered with WONT, WILL with DONT. WONT and DONT need no answer.
    """
    answer = {DO: WONT, WILL: DONT}.get(command)
    if answer is None:
        return None
    return bytes([IAC, answer, option])


def escape_iac(data: bytes) -> bytes:
    """Double literal IAC bytes in outgoing data."""
    return data.replace(bytes([IAC]), bytes([IAC, IAC]))


def format_line(text: str, line_ending: str = CRLF) -> str:
    """Terminate ``text`` with ``line_ending`` unless it already is."""
    if line_ending and text.endswith(line_ending):
        return text
    return text + line_ending


def preview(text: str, limit: int = 60) -> str:
    """Single-line preview of received text for logs and traces."""
    flat = text.replace("\r", "\\r").replace("\n", "\\n")
    if len(flat) > limit:
        return flat[: limit - 3] + "..."
    return flat
