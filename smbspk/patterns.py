"""
Pattern table for the remote ephemeris service.

Every prompt and diagnostic the primary dialogue reacts to is a regular
expression held here rather than in the script, so a change in the service's
wording is a configuration change. A JSON file holding a subset of the field
names overrides the defaults.
"""

import json
import logging
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Optional

from .exceptions import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatternTable:
    # Prompts
    main_prompt: str = r"Horizons> "
    label_prompt: str = r"Input small-body label.*: "
    elements_prompt: str = r"Enter osculating elements.*: "
    select_prompt: str = r"Select \.\.\. .*<cr>: "
    email_prompt: str = r"Enter your Internet e-mail address.*: "
    email_confirm_prompt: str = r"Confirm e-mail address.*: "
    format_prompt: str = r"SPK file format.*: "
    spk_id_prompt: str = r"Enter SPK ID.*: "
    start_prompt: str = r"SPK object START.*: "
    stop_prompt: str = r"SPK object STOP.*: "
    more_objects_prompt: str = r"Add more objects.*: "
    logout_prompt: str = r"\[R\]edisplay, \? : "

    # Results
    assigned_id: str = r"Assigned SPK object ID\s*:\s*(?P<spk_id>\d+)\s"
    full_path: str = r"Full path\s*:\s*ftp://(?P<ftp_host>[^/\s]+)/(?P<ftp_path>\S+)\s"

    # Diagnostics. Each one runs to the end of its line so a message split
    # across several reads is only matched once it is complete.
    input_error: str = r"INPUT ERROR[^\r\n]*\r?\n"
    value_too_large: str = r"[Vv]alue too large[^\r\n]*\r?\n"
    date_out_of_range: str = (
        r"(?:Cannot interpret date|outside .*range|No ephemeris for target)"
        r"[^\r\n]*\r?\n"
    )
    span_too_small: str = r"time-span too small[^\r\n]*\r?\n"
    id_rejected: str = r"SPK ID .*(?:in use|not allowed|invalid)[^\r\n]*\r?\n"
    generation_failed: str = r"Cannot create SPK[^\r\n]*\r?\n"

    def as_dict(self) -> Dict[str, str]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


DEFAULT_PATTERNS = PatternTable()


def validate_patterns(table: PatternTable) -> PatternTable:
    """Compile every pattern once so a bad override fails before any I/O."""
    for name, pattern in table.as_dict().items():
        try:
            re.compile(pattern)
        except re.error as e:
            raise ValidationError(
                f"Invalid pattern for {name}: {e}", context={"pattern": name}
            ) from e
    return table


def pattern_table_from_mapping(
    overrides: Dict[str, Any], base: PatternTable = DEFAULT_PATTERNS
) -> PatternTable:
    """Overlay ``overrides`` onto ``base``."""
    known = {f.name for f in fields(PatternTable)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValidationError(
            f"Unknown pattern names: {', '.join(unknown)}",
            context={"known": len(known)},
        )
    for name, value in overrides.items():
        if not isinstance(value, str):
            raise ValidationError(
                f"Pattern {name} must be a string", context={"pattern": name}
            )
    return validate_patterns(replace(base, **overrides))


def load_pattern_table(path: Optional[str] = None) -> PatternTable:
    """
    Load the pattern table, applying overrides from the JSON file at ``path``.

    Raises:
        ValidationError: If the file cannot be read or holds bad entries.
    """
    if not path:
        return DEFAULT_PATTERNS
    try:
        with open(path, "r", encoding="utf-8") as f:
            overrides = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(
            f"Failed to read pattern file {path}: {e}", context={"path": path}
        ) from e
    if not isinstance(overrides, dict):
        raise ValidationError(
            f"Pattern file {path} must hold a JSON object", context={"path": path}
        )
    logger.info(f"Loaded {len(overrides)} pattern override(s) from {path}")
    return pattern_table_from_mapping(overrides)
