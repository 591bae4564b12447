from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Literal

import anyio
import msgspec

from .callbacks import CallbackEvent, Canceled, Continuing, Failed, Succeeded
from .jobs import NO_PERCENT, JobRecord, JobStore
from .logging import bind_job_context, clear_context, get_logger
from .notifier import Notifier, SentMessage
from .outputs import Output, classify_output, gather_outputs
from .progress import extract_percent, render_progress, should_notify

logger = get_logger(__name__)

MAX_FAILURE_CHARS = 2000
RETIRED_MEMORY = 1024

NO_OUTPUT_TEXT = "Job finished but produced no output."
CANCELED_TEXT = "Job was canceled before it finished."

_DEFAULT_CAPTIONS: dict[str, str] = {
    "video": "Here is your video",
    "photo": "Here is your image",
    "audio": "Here is your audio",
    "document": "Result",
}

SurfaceKind = Literal["caption", "text"]


def progress_surface(record: JobRecord) -> tuple[SurfaceKind, int] | None:
    """Message that should carry the next progress update, if any exists."""
    if record.final_media_message_id is not None:
        return "caption", record.final_media_message_id
    if record.progress_message_id is None:
        return None
    if record.progress_is_media:
        return "caption", record.progress_message_id
    return "text", record.progress_message_id


def render_failure(payload: Mapping[str, Any]) -> str:
    try:
        rendered = msgspec.json.encode(payload).decode()
    except (TypeError, msgspec.EncodeError):
        rendered = repr(payload)
    return "Job failed: " + rendered[:MAX_FAILURE_CHARS]


@dataclass(slots=True)
class _LockEntry:
    lock: anyio.Lock = field(default_factory=anyio.Lock)
    users: int = 0


class JobEngine:
    """Correlates provider callbacks with tracked jobs and drives the chat UI.

    Each call to :meth:`handle` processes one callback. Callbacks for
    different jobs run concurrently; callbacks for the same job are
    serialized within this process. Nothing raised while handling a
    callback propagates to the caller.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        notifier: Notifier,
        clock: Callable[[], float] = time.time,
        retired_memory: int = RETIRED_MEMORY,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._clock = clock
        self._retired: OrderedDict[str, None] = OrderedDict()
        self._retired_memory = retired_memory
        self._locks: dict[str, _LockEntry] = {}

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def handle(self, payload: Mapping[str, Any]) -> None:
        if not isinstance(payload, Mapping):
            logger.info(
                "callback.invalid_payload", payload_type=type(payload).__name__
            )
            return
        event = CallbackEvent.from_payload(payload)
        if not event.correlatable:
            logger.info("callback.uncorrelatable")
            return
        if event.job_id is None:
            logger.info("callback.missing_job_id", chat_id=event.context.chat_id)
            return
        async with self._job_lock(event.job_id):
            bind_job_context(job_id=event.job_id)
            try:
                await self._handle_event(event.job_id, event)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "callback.failed",
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                    exc_info=True,
                )
            finally:
                clear_context()

    async def track(self, record: JobRecord) -> bool:
        """Start tracking a freshly submitted job.

        Callbacks can beat the submitter here: a job that was already
        recovered or retired is left alone and ``False`` is returned.
        """
        job_id = record.job_id
        async with self._job_lock(job_id):
            if job_id in self._retired:
                logger.info("job.track.already_retired", job_id=job_id)
                return False
            if await self._store.get(job_id) is not None:
                logger.info("job.track.already_recovered", job_id=job_id)
                return False
            await self._store.put(job_id, record)
        logger.info("job.tracked", job_id=job_id, chat_id=record.chat_id)
        return True

    @asynccontextmanager
    async def _job_lock(self, job_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(job_id)
        if entry is None:
            entry = _LockEntry()
            self._locks[job_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(job_id, None)

    async def _resolve(self, job_id: str, event: CallbackEvent) -> JobRecord | None:
        record = await self._store.get(job_id)
        if record is not None:
            return record
        if job_id in self._retired:
            logger.info("job.already_retired")
            return None
        chat_id = event.context.chat_id
        if chat_id is None:
            logger.info("job.unknown")
            return None
        record = JobRecord(
            job_id=job_id,
            chat_id=chat_id,
            caption=event.context.caption,
            last_percent=NO_PERCENT,
            created_at_ms=self._now_ms(),
        )
        await self._store.put(job_id, record)
        logger.info("job.recovered", chat_id=chat_id)
        return record

    async def _handle_event(self, job_id: str, event: CallbackEvent) -> None:
        record = await self._resolve(job_id, event)
        if record is None:
            return

        if record.delivered:
            logger.info("job.progress.suppressed_after_delivery")
        else:
            await self._maybe_notify_progress(record, event)

        match event.status:
            case Succeeded():
                await self._deliver_outputs(record, event.payload)
                await self._retire(record)
            case Failed():
                await self._send_text(record, render_failure(event.payload))
                await self._retire(record)
            case Canceled():
                await self._send_text(record, CANCELED_TEXT)
                await self._retire(record)
            case Continuing(status=status):
                logger.debug("job.pending", status=status)

    async def _maybe_notify_progress(
        self, record: JobRecord, event: CallbackEvent
    ) -> None:
        percent = extract_percent(event.payload)
        now_ms = self._now_ms()
        if not should_notify(
            record.last_percent, record.last_update_at_ms, percent, now_ms
        ):
            return
        await self._notify_progress(record, render_progress(percent))
        if percent is not None:
            record.last_percent = percent
        record.last_update_at_ms = now_ms
        await self._store.put(record.job_id, record)

    async def _notify_progress(self, record: JobRecord, text: str) -> None:
        surface = progress_surface(record)
        try:
            match surface:
                case ("caption", message_id):
                    edited = await self._notifier.edit_caption(
                        record.chat_id, message_id, text
                    )
                case ("text", message_id):
                    edited = await self._notifier.edit_text(
                        record.chat_id, message_id, text
                    )
                case _:
                    sent = await self._notifier.send_text(record.chat_id, text)
                    if sent is not None:
                        record.progress_message_id = sent.message_id
                        record.progress_is_media = sent.is_media
                    edited = sent is not None
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "job.progress.notify_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return
        if not edited:
            logger.info("job.progress.not_delivered", surface=surface)

    async def _deliver_outputs(
        self, record: JobRecord, payload: Mapping[str, Any]
    ) -> None:
        outputs = gather_outputs(payload)
        if not outputs:
            await self._send_text(record, NO_OUTPUT_TEXT)
            return
        # a replayed success resumes after the outputs already handled
        if record.sent_outputs:
            logger.info("job.output.resuming", already_sent=record.sent_outputs)
        for raw in outputs[record.sent_outputs :]:
            output = classify_output(raw)
            sent = await self._deliver_one(record, output)
            record.sent_outputs += 1
            if sent is not None and sent.is_media:
                record.final_media_message_id = sent.message_id
            await self._store.put(record.job_id, record)
            if sent is not None and sent.is_media:
                await self._ensure_caption(
                    record, sent, self._caption_for(record, output)
                )

    async def _deliver_one(
        self, record: JobRecord, output: Output
    ) -> SentMessage | None:
        try:
            sent = await self._deliver(record, output)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "job.output.delivery_failed",
                kind=output.kind,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None
        if sent is None:
            logger.warning("job.output.not_delivered", kind=output.kind)
            return None
        logger.info("job.output.delivered", kind=output.kind)
        return sent

    def _caption_for(self, record: JobRecord, output: Output) -> str:
        return record.caption or _DEFAULT_CAPTIONS.get(output.kind, "Result")

    async def _deliver(self, record: JobRecord, output: Output) -> SentMessage | None:
        caption = self._caption_for(record, output)
        match output.kind:
            case "video":
                return await self._notifier.send_video(
                    record.chat_id, output.value, caption
                )
            case "photo":
                return await self._notifier.send_photo(
                    record.chat_id, output.value, caption
                )
            case "audio" | "document":
                return await self._notifier.send_document(
                    record.chat_id, output.value, caption
                )
            case _:
                return await self._notifier.send_text(record.chat_id, output.value)

    async def _ensure_caption(
        self, record: JobRecord, sent: SentMessage, caption: str
    ) -> None:
        if sent.caption is not None and caption in sent.caption:
            return
        try:
            await self._notifier.edit_caption(record.chat_id, sent.message_id, caption)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "job.output.caption_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    async def _send_text(self, record: JobRecord, text: str) -> None:
        try:
            await self._notifier.send_text(record.chat_id, text)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "job.notify_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    async def _retire(self, record: JobRecord) -> None:
        await self._store.delete(record.job_id)
        self._retired[record.job_id] = None
        self._retired.move_to_end(record.job_id)
        while len(self._retired) > self._retired_memory:
            self._retired.popitem(last=False)
        logger.info("job.retired")
