from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

import msgspec

OutputKind: TypeAlias = Literal["video", "photo", "audio", "document", "text"]

VIDEO_RE = re.compile(r"\.(mp4|webm|mov|mkv)(\?|$)", re.IGNORECASE)
IMAGE_RE = re.compile(r"\.(jpe?g|png|gif)(\?|$)", re.IGNORECASE)
AUDIO_RE = re.compile(r"\.(mp3|wav|ogg)(\?|$)", re.IGNORECASE)
HTTP_RE = re.compile(r"^https?://", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class Output:
    kind: OutputKind
    value: str


def is_empty_output(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


def _flatten(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        flat: list[Any] = []
        for item in value:
            flat.extend(_flatten(item))
        return flat
    return [value]


def gather_outputs(payload: Mapping[str, Any] | None) -> list[Any]:
    """Non-empty output values of a finished prediction, flattened."""
    if not isinstance(payload, Mapping):
        return []
    raw = payload.get("output")
    if raw is None:
        nested = payload.get("prediction")
        if isinstance(nested, Mapping):
            raw = nested.get("output")
    if raw is None:
        raw = payload.get("outputs")
    return [item for item in _flatten(raw) if not is_empty_output(item)]


def _unwrap(value: Any) -> Any:
    if isinstance(value, (list, tuple)) and len(value) == 1:
        value = value[0]
    if isinstance(value, Mapping) and isinstance(value.get("url"), str):
        value = value["url"]
    return value


def _render_literal(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return msgspec.json.encode(value).decode()
    except (TypeError, msgspec.EncodeError):
        return str(value)


def classify_output(value: Any) -> Output:
    value = _unwrap(value)
    if not isinstance(value, str):
        return Output(kind="text", value=_render_literal(value))
    if VIDEO_RE.search(value):
        return Output(kind="video", value=value)
    if IMAGE_RE.search(value):
        return Output(kind="photo", value=value)
    if AUDIO_RE.search(value):
        return Output(kind="audio", value=value)
    if HTTP_RE.match(value):
        return Output(kind="document", value=value)
    return Output(kind="text", value=value)
