from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from .jobs import ChatId

SUCCESS_STATUSES = frozenset({"succeeded", "completed"})
FAILURE_STATUSES = frozenset({"failed", "error"})
CANCELED_STATUSES = frozenset({"canceled", "cancelled"})

CHAT_ID_KEYS = ("telegram_chat_id", "chat_id")
CAPTION_KEYS = ("caption", "prompt", "text")


@dataclass(frozen=True, slots=True)
class Continuing:
    status: str | None = None


@dataclass(frozen=True, slots=True)
class Succeeded:
    pass


@dataclass(frozen=True, slots=True)
class Failed:
    error: Any = None


@dataclass(frozen=True, slots=True)
class Canceled:
    pass


JobStatus: TypeAlias = Continuing | Succeeded | Failed | Canceled


def parse_status(value: Any, *, error: Any = None) -> JobStatus:
    if not isinstance(value, str):
        return Continuing()
    status = value.strip().lower()
    if status in SUCCESS_STATUSES:
        return Succeeded()
    if status in FAILURE_STATUSES:
        return Failed(error=error)
    if status in CANCELED_STATUSES:
        return Canceled()
    return Continuing(status=status or None)


def _nested(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    nested = payload.get("prediction")
    return nested if isinstance(nested, Mapping) else {}


def _first(payload: Mapping[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None:
        value = _nested(payload).get(key)
    return value


def _chat_id(value: Any) -> ChatId | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            # channel usernames such as @name
            return value
    return None


@dataclass(frozen=True, slots=True)
class EmbeddedContext:
    chat_id: ChatId | None = None
    caption: str | None = None


def embedded_context(payload: Mapping[str, Any]) -> EmbeddedContext:
    block = _first(payload, "input")
    if not isinstance(block, Mapping):
        return EmbeddedContext()
    chat_id = None
    for key in CHAT_ID_KEYS:
        chat_id = _chat_id(block.get(key))
        if chat_id is not None:
            break
    caption = None
    for key in CAPTION_KEYS:
        value = block.get(key)
        if isinstance(value, str) and value.strip():
            caption = value
            break
    return EmbeddedContext(chat_id=chat_id, caption=caption)


@dataclass(frozen=True, slots=True)
class CallbackEvent:
    job_id: str | None
    status: JobStatus
    context: EmbeddedContext
    payload: Mapping[str, Any] = field(repr=False)

    @property
    def correlatable(self) -> bool:
        return self.job_id is not None or self.context.chat_id is not None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> CallbackEvent:
        raw_id = _first(payload, "id")
        job_id = None
        if isinstance(raw_id, (str, int)) and not isinstance(raw_id, bool):
            job_id = str(raw_id).strip() or None
        status = parse_status(
            _first(payload, "status"), error=_first(payload, "error")
        )
        return cls(
            job_id=job_id,
            status=status,
            context=embedded_context(payload),
            payload=payload,
        )
