"""Harness exceptions and driver error classification."""
from __future__ import annotations

import enum
from typing import Optional, Sequence

from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class HarnessError(Exception):
    """Base class for faults of the harness itself."""


class ConfigurationError(HarnessError):
    def __init__(self, role: str, missing: Sequence[str]) -> None:
        self.role = role
        self.missing = list(missing)
        super().__init__(f"missing env: {', '.join(self.missing)}")


class WriteError(HarnessError):
    def __init__(self, message: str, kind: "ErrorKind") -> None:
        super().__init__(message)
        self.kind = kind


class ReadError(HarnessError):
    def __init__(self, message: str, kind: "ErrorKind") -> None:
        super().__init__(message)
        self.kind = kind


class ErrorKind(enum.Enum):
    READ_ONLY = "read_only"
    DUPLICATE_KEY = "duplicate_key"
    UNKNOWN_VARIABLE = "unknown_variable"
    CONNECTION = "connection"
    POOL_EXHAUSTED = "pool_exhausted"
    OTHER = "other"


READ_ONLY_CODES = frozenset({1290, 1792, 1836})
DUPLICATE_KEY_CODES = frozenset({1062})
UNKNOWN_VARIABLE_CODES = frozenset({1193})
CONNECTION_CODES = frozenset({2003, 2006, 2013, 2055})


def extract_error_code(exc: BaseException) -> Optional[int]:
    """Best-effort helper to pull a numeric error code off a DB exception."""
    code = getattr(exc, "errno", None)
    if isinstance(code, int):
        return code
    if exc.args:
        first = exc.args[0]
        if isinstance(first, int):
            return first
    return None


def classify_error(exc: BaseException) -> ErrorKind:
    """Map a driver or pool exception onto an ErrorKind.

    Error codes are checked first. The substring fallback for read-only
    rejections depends on server message text, which is not a stable contract
    across MySQL/Aurora versions; keep any new text matching in this function.
    """
    if isinstance(exc, PoolTimeoutError):
        return ErrorKind.POOL_EXHAUSTED
    code = extract_error_code(exc)
    if code in READ_ONLY_CODES:
        return ErrorKind.READ_ONLY
    if code in DUPLICATE_KEY_CODES:
        return ErrorKind.DUPLICATE_KEY
    if code in UNKNOWN_VARIABLE_CODES:
        return ErrorKind.UNKNOWN_VARIABLE
    if code in CONNECTION_CODES:
        return ErrorKind.CONNECTION
    text = str(exc).lower()
    if "read-only" in text or "read only" in text:
        return ErrorKind.READ_ONLY
    return ErrorKind.OTHER


def is_structural(kind: ErrorKind) -> bool:
    """True when retrying the same query inside a poll loop cannot help."""
    return kind is ErrorKind.POOL_EXHAUSTED
