from __future__ import annotations

import re
from enum import Enum
from typing import Any

_WHITESPACE_RE = re.compile(r"\s+")
_SEPARATOR_RE = re.compile(r"[\s\-]+")

DEFAULT_INITIAL_STATUS = "NEW"
RESOLVED_STATUS = "RESOLVED"
CLOSED_STATUS = "CLOSED"


class TicketPriority(str, Enum):
    """Supported ticket priorities."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


HIGH_PRIORITIES = frozenset({TicketPriority.HIGH.value, TicketPriority.CRITICAL.value})


def _as_text(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    return "" if value is None else str(value)


def normalize_status(value: Any) -> str:
    """Return the external status token: upper-case, spaces collapsed to underscores."""

    return _WHITESPACE_RE.sub("_", _as_text(value).strip()).upper()


def normalize_state_key(value: Any) -> str:
    """Return a comparison key for state ids and labels.

    Workflow graphs reference the same state by node id, label or a differently
    cased status token, so comparisons lower-case the value and collapse runs of
    whitespace and hyphens into a single underscore.
    """

    return _SEPARATOR_RE.sub("_", _as_text(value).strip()).lower()


def role_key(role: Any) -> str:
    """Reduce a role (enum or plain string) to the string stored on workflow edges."""

    return _as_text(role).strip()
