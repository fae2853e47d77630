"""
Level Import Service - Shared Utilities

Common helpers used across multiple modules to avoid duplication.
"""

import json
import math
import re
import secrets
from typing import Any


def sanitize_filename(name: str) -> str:
    """
    Sanitize a string for use as a stored filename.

    Keeps letters, digits, dots, dashes and underscores; everything else
    collapses to a single underscore.
    """
    result = re.sub(r"[^A-Za-z0-9._-]+", "_", name)

    # Strip leading/trailing separators and dots
    result = result.strip(" ._")

    return result or "file"


def round_half_up(value: float) -> int:
    """Round to the nearest integer with ties going up (2.5 -> 3, -0.5 -> 0)."""
    return math.floor(value + 0.5)


def slugify(text: str, max_length: int = 60) -> str:
    """Lowercase *text* and collapse non-alphanumerics into single dashes."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].strip("-")


def build_level_id(title: str) -> str:
    """Build a level id from the title slug plus a short random suffix."""
    slug = slugify(title) or "untitled-level"
    return f"{slug}-{secrets.token_hex(4)}"


def parse_json_column(raw: Any) -> Any:
    """
    Safely parse a JSON column that may be a string or already decoded.

    Returns an empty dict for unparsable input.
    """
    if isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return {}
    return {}


def summarize_process_output(output: str, max_lines: int = 3) -> str:
    """Collapse tool output into its first few non-empty lines."""
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return " | ".join(lines[:max_lines])
