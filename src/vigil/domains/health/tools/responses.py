"""JSON envelopes shared by the signal tools."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from vigil.core.results import Result


def error_json(result: Result[Any]) -> str:
    """``{"status": "error", "code": ..., "message": ...}`` for a failed result."""
    return json.dumps({"status": "error", **result.error.to_dict()}, indent=2)


def result_json(
    result: Result[Any],
    key: str,
    render: Callable[[Any], Any] = lambda value: value.to_dict(),
    **extra: Any,
) -> str:
    """Serialize a result: ``render(value)`` under ``key`` on success."""
    if not result.ok:
        return error_json(result)
    payload: dict[str, Any] = {"status": "ok", key: render(result.value), **extra}
    if result.warning:
        payload["warning"] = result.warning
    return json.dumps(payload, indent=2, default=str)
