"""
Small helpers shared by the store and the worker runtime.
"""

import json
import logging
import math
import time
from typing import Any

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def finite_int(value: Any) -> int | None:
    """
    Floor a numeric value to an int.

    Returns None for None, non-numbers, NaN and infinities so callers can
    fall back to their own default.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return math.floor(number)


def clean_str(value: Any) -> str:
    """Coerce to a stripped string, treating None as empty."""
    if value is None:
        return ""
    return str(value).strip()


def dump_json(value: Any) -> str:
    """Serialize an opaque payload/result value."""
    return json.dumps(value, separators=(",", ":"))


def safe_parse_json(raw: str | None) -> Any:
    """
    Parse stored JSON text.

    Corrupt text degrades to None so one bad row cannot break reads of
    other jobs.
    """
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding unparseable JSON column", extra={"length": len(raw)})
        return None
