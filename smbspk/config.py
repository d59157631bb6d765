"""Runtime settings for smbspk, overridable through ``SMBSPK_*`` variables."""

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .exceptions import ValidationError


@dataclass(frozen=True)
class Settings:
    """Endpoints, timeouts and protocol tokens for one run."""

    host: str = "ssd.jpl.nasa.gov"
    port: int = 6775
    # None means "use the host named in the generated file's URL"
    ftp_host: Optional[str] = None
    ftp_port: int = 21
    ftp_user: str = "anonymous"
    ftp_directory: str = "pub/ssd"
    ftp_passive: bool = False
    connect_timeout: float = 30.0
    handshake_timeout: float = 15.0
    step_timeout: float = 60.0
    transfer_timeout: float = 120.0
    timeout_override: Optional[float] = None
    line_ending: str = "\r\n"
    cancel_token: str = "x"
    patterns_file: Optional[str] = None
    output_dir: str = "."

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from ``SMBSPK_*`` environment variables.

        Raises:
            ValidationError: If a variable cannot be converted.
        """
        env = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for name, (key, convert) in _ENV_VARS.items():
            raw = env.get(name)
            if raw is None or raw == "":
                continue
            try:
                overrides[key] = convert(raw)
            except ValueError as e:
                raise ValidationError(
                    f"Invalid value for {name}: {raw!r}", context={"variable": name}
                ) from e
        return replace(cls(), **overrides)

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)


_ENV_VARS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "SMBSPK_HOST": ("host", str),
    "SMBSPK_PORT": ("port", int),
    "SMBSPK_FTP_HOST": ("ftp_host", str),
    "SMBSPK_FTP_PORT": ("ftp_port", int),
    "SMBSPK_FTP_PASSIVE": ("ftp_passive", _parse_bool),
    "SMBSPK_CONNECT_TIMEOUT": ("connect_timeout", float),
    "SMBSPK_HANDSHAKE_TIMEOUT": ("handshake_timeout", float),
    "SMBSPK_STEP_TIMEOUT": ("step_timeout", float),
    "SMBSPK_TRANSFER_TIMEOUT": ("transfer_timeout", float),
    "SMBSPK_TIMEOUT_OVERRIDE": ("timeout_override", float),
    "SMBSPK_PATTERNS": ("patterns_file", str),
    "SMBSPK_OUTPUT_DIR": ("output_dir", str),
}
