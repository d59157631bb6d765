"""Caller-facing value types: the request, the artifact reference, the outcome."""

import os
import posixpath
import re
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from .exceptions import RemoteRejected, ValidationError

BINARY_SUFFIX = ".bsp"
TRANSFER_SUFFIX = ".xsp"

_CONTACT_RE = re.compile(r"^[^@\s]+@[^@\s]+$")


@dataclass(frozen=True)
class SpkRequest:
    """Parameters for one SPK generation request.

    ``binary`` selects the ready-to-use binary format; otherwise the text
    transfer format is requested. A blank ``spk_id`` lets the remote peer
    assign one; assignment is random on the peer, so two identical requests
    get different identifiers.
    """

    binary: bool
    label: str
    start: str
    stop: str
    elements: str
    email: str
    output: Optional[str] = None
    spk_id: Optional[str] = None

    @property
    def format_code(self) -> str:
        return "B" if self.binary else "T"

    @property
    def suffix(self) -> str:
        return BINARY_SUFFIX if self.binary else TRANSFER_SUFFIX

    def dialogue_params(self) -> Dict[str, str]:
        """Values the primary dialogue sends, keyed by template name."""
        return {
            "label": self.label.strip(),
            "elements": " ".join(self.elements.split()),
            "email": self.email.strip(),
            "format_code": self.format_code,
            "spk_id": (self.spk_id or "").strip(),
            "start": self.start.strip(),
            "stop": self.stop.strip(),
        }


def validate_request(request: SpkRequest) -> SpkRequest:
    """
    Check a request before any network I/O.

    Raises:
        ValidationError: Describing the first problem found.
    """
    for name in ("label", "start", "stop", "elements", "email"):
        if not getattr(request, name, "").strip():
            raise ValidationError(f"Missing {name}", context={"field": name})
    if not _CONTACT_RE.match(request.email.strip()):
        raise ValidationError(
            f"Invalid e-mail address {request.email!r}: expected user@host",
            context={"field": "email"},
        )
    if request.spk_id and not request.spk_id.strip().isdigit():
        raise ValidationError(
            f"SPK ID must be numeric, got {request.spk_id!r}",
            context={"field": "spk_id"},
        )
    if request.output:
        directory = os.path.dirname(os.path.abspath(request.output))
        if not os.path.isdir(directory):
            raise ValidationError(
                f"Output directory does not exist: {directory}",
                context={"field": "output"},
            )
    return request


@dataclass(frozen=True)
class ArtifactRef:
    """Where the generated file lives remotely and what to call it locally."""

    host: str
    directory: str
    filename: str
    binary: bool
    spk_id: Optional[str] = None

    @classmethod
    def from_captures(
        cls,
        captured: Mapping[str, str],
        binary: bool,
        default_directory: str,
        default_host: str,
    ) -> "ArtifactRef":
        """Build a reference from values captured during the dialogue."""
        path = captured.get("ftp_path", "")
        directory, filename = posixpath.split(path.strip("/"))
        if not filename:
            raise RemoteRejected(
                "No file name captured from the remote dialogue",
                context={"captured": ", ".join(sorted(captured))},
            )
        return cls(
            host=captured.get("ftp_host") or default_host,
            directory=directory or default_directory,
            filename=filename,
            binary=binary,
            spk_id=captured.get("spk_id"),
        )

    @property
    def local_name(self) -> str:
        suffix = BINARY_SUFFIX if self.binary else TRANSFER_SUFFIX
        if self.spk_id:
            return f"{self.spk_id}{suffix}"
        return self.filename


@dataclass(frozen=True)
class Outcome:
    """Terminal result of a run."""

    success: bool
    reason: str
    path: Optional[str] = None
    spk_id: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1
