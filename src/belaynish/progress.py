from __future__ import annotations

import math
import re
from collections.abc import Iterator, Mapping
from typing import Any

MIN_DELTA_PERCENT = 5
MIN_INTERVAL_MS = 15_000

_PERCENT_RE = re.compile(r"(\d{1,3})\s?%")
_PROGRESS_RE = re.compile(r"progress[:=]\s*(\d+(?:\.\d+)?|\.\d+)", re.IGNORECASE)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _clamp(value: float) -> int:
    return min(100, max(0, int(math.floor(value + 0.5))))


def _fraction_to_percent(value: Any) -> int | None:
    if not _is_number(value) or not 0 <= value <= 1:
        return None
    return _clamp(value * 100)


def _views(payload: Mapping[str, Any]) -> Iterator[Mapping[str, Any]]:
    yield payload
    nested = payload.get("prediction")
    if isinstance(nested, Mapping):
        yield nested


def _last_log_line(logs: Any) -> str | None:
    if isinstance(logs, str):
        lines = [line for line in logs.splitlines() if line.strip()]
        return lines[-1] if lines else None
    if isinstance(logs, list) and logs:
        last = logs[-1]
        return "" if last is None else str(last)
    return None


def _percent_from_log(line: str) -> int | None:
    match = _PERCENT_RE.search(line)
    if match:
        return _clamp(int(match.group(1)))
    match = _PROGRESS_RE.search(line)
    if match:
        value = float(match.group(1))
        if value <= 1:
            value *= 100
        return _clamp(value)
    return None


def extract_percent(payload: Mapping[str, Any] | None) -> int | None:
    """Best-effort progress percentage for a provider callback.

    Checks, in order, a fractional ``progress`` field, a fractional
    ``metrics.progress`` field, and the latest log line. Returns ``None``
    when nothing usable is present.
    """
    if not isinstance(payload, Mapping):
        return None
    views = list(_views(payload))
    for view in views:
        percent = _fraction_to_percent(view.get("progress"))
        if percent is not None:
            return percent
    for view in views:
        metrics = view.get("metrics")
        if isinstance(metrics, Mapping):
            percent = _fraction_to_percent(metrics.get("progress"))
            if percent is not None:
                return percent
    for view in views:
        line = _last_log_line(view.get("logs"))
        if line is None:
            continue
        percent = _percent_from_log(line)
        if percent is not None:
            return percent
    return None


def should_notify(
    last_percent: int,
    last_update_at_ms: int,
    percent: int | None,
    now_ms: int,
) -> bool:
    if percent is not None and percent - last_percent >= MIN_DELTA_PERCENT:
        return True
    return now_ms - last_update_at_ms >= MIN_INTERVAL_MS


def render_progress(percent: int | None) -> str:
    if percent is None:
        return "Processing: processing..."
    return f"Processing: {percent}%"

