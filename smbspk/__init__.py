"""
smbspk package init.
Exports the session classes and the command-line entry point for requesting
small-body SPK files from a remote ephemeris service.
"""

import argparse
import datetime
import json
import logging
import os
import sys
from typing import List, NoReturn, Optional

from .config import Settings
from .exceptions import (
    ConnectFailed,
    ProtocolTimeout,
    RemoteRejected,
    SpkError,
    TransferFailed,
    ValidationError,
)
from .patterns import PatternTable, load_pattern_table
from .protocol.trace_recorder import TraceRecorder
from .request import Outcome, SpkRequest, validate_request
from .session import AsyncSession, Session

__version__ = "0.2.0"


_CORRELATION_FIELDS = ("session_id", "step", "step_name")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with the dialogue step when known."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.datetime.now().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
        }
        for name in _CORRELATION_FIELDS:
            value = getattr(record, name, None)
            if value is not None and value != "":
                entry[name] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "WARNING") -> None:
    """
    Configure the root logger.

    Plain text by default; JSON lines when SMBSPK_LOG_JSON is "true".
    """
    numeric = getattr(logging, level.upper())
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    if os.environ.get("SMBSPK_LOG_JSON", "false").lower() != "true":
        logging.basicConfig(level=numeric)
        return
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)
    root.setLevel(numeric)


class _ArgumentParser(argparse.ArgumentParser):
    """Reports usage errors as ValidationError so they exit with status 1."""

    def error(self, message: str) -> NoReturn:
        raise ValidationError(f"{message}\n{self.format_usage().strip()}")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="smb_spk",
        description=(
            "Request a small-body SPK file for user-supplied osculating "
            "elements and retrieve it by anonymous FTP."
        ),
    )
    mode = parser.add_mutually_exclusive_group(required=True)
    mode.add_argument(
        "-b", "--binary", action="store_true", help="Binary SPK (.bsp), ready to use"
    )
    mode.add_argument(
        "-t",
        "--transfer",
        action="store_true",
        help="Transfer-format SPK (.xsp), to be converted locally",
    )
    parser.add_argument("label", help="Label for the object")
    parser.add_argument("start", help="Start of the SPK time span")
    parser.add_argument("stop", help="End of the SPK time span")
    parser.add_argument("elements", help="Osculating elements, as one quoted argument")
    parser.add_argument("email", help="Contact e-mail address (also the FTP password)")
    parser.add_argument(
        "output", nargs="?", default=None, help="Local file name (default: <SPK ID>.bsp/.xsp)"
    )
    parser.add_argument(
        "--spk-id", default=None, help="Request a specific SPK ID instead of a random one"
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level",
    )
    parser.add_argument(
        "--trace", metavar="FILE", default=None, help="Write the dialogue transcript as JSON"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point. Returns 0 when the file was saved locally, 1 otherwise."""
    try:
        args = build_parser().parse_args(argv)
        setup_logging(args.log_level)
        request = validate_request(
            SpkRequest(
                binary=args.binary,
                label=args.label,
                start=args.start,
                stop=args.stop,
                elements=args.elements,
                email=args.email,
                output=args.output,
                spk_id=args.spk_id,
            )
        )
        settings = Settings.from_env()
        patterns = load_pattern_table(settings.patterns_file)
    except ValidationError as e:
        print(f"smb_spk: {e}", file=sys.stderr)
        return 1

    recorder = TraceRecorder() if args.trace else None
    outcome = Session(request, settings, patterns, recorder).run()

    if recorder is not None:
        try:
            with open(args.trace, "w", encoding="utf-8") as f:
                f.write(recorder.to_json(indent=2))
        except OSError as e:
            logging.getLogger(__name__).warning(f"Could not write trace {args.trace}: {e}")

    if outcome.success:
        print(outcome.reason)
    else:
        print(f"smb_spk: {outcome.reason}", file=sys.stderr)
    return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())


__all__ = [
    "AsyncSession",
    "ConnectFailed",
    "Outcome",
    "PatternTable",
    "ProtocolTimeout",
    "RemoteRejected",
    "Session",
    "Settings",
    "SpkError",
    "SpkRequest",
    "TraceRecorder",
    "TransferFailed",
    "ValidationError",
    "main",
    "setup_logging",
]
