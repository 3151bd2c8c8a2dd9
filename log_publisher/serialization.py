"""
Failure-safe serialization for values that end up in log lines.

Request bodies and exceptions come from arbitrary user code. Nothing here is
allowed to raise: a value that cannot be rendered is replaced by a sentinel.
"""
import dataclasses
import json
import traceback
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict
from uuid import UUID

UNSERIALIZABLE = "[unserializable]"

DEFAULT_STACK_LIMIT = 2000


def _default(value: Any) -> Any:
    """json.dumps hook for common non-JSON types."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal, PurePath)):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    # Pydantic models (FastAPI request bodies)
    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        return model_dump()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def safe_dumps(value: Any) -> str:
    """
    Serialize a value to compact JSON, never raising.

    Args:
        value: Any value

    Returns:
        str: JSON text, or the UNSERIALIZABLE sentinel
    """
    try:
        return json.dumps(value, default=_default, ensure_ascii=False, separators=(",", ":"))
    except Exception:
        # TypeError/ValueError from json, RecursionError on cycles, or
        # anything a user-defined model_dump() raises
        return json.dumps(UNSERIALIZABLE)


def describe_error(error: BaseException, stack_limit: int = DEFAULT_STACK_LIMIT) -> Dict[str, Any]:
    """
    Build a loggable description of an exception.

    Only the exception name, its message and the tail of its traceback are
    kept; exception attributes (which may carry request payloads) are not.

    Args:
        error: Exception raised by a request handler
        stack_limit: Maximum number of stack characters to keep

    Returns:
        Dict[str, Any]: {"name", "message", "stack"}
    """
    try:
        message = str(error)
    except Exception:
        message = UNSERIALIZABLE

    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    if len(stack) > stack_limit:
        # Innermost frames are the useful ones
        stack = "..." + stack[-stack_limit:]

    return {
        "name": type(error).__name__,
        "message": message,
        "stack": stack,
    }
