from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .engine import JobEngine
from .jobs import ChatId, JobRecord
from .logging import get_logger
from .lookups import Lookups
from .notifier import Notifier
from .replicate import ReplicateClient, ReplicateError
from .settings import MEDIA_MODES, ReplicateSettings

logger = get_logger(__name__)

COMMAND = "/ai"

HELP_TEXT = """/ai <mode> <input>

Chat:
  /ai chat <prompt>

Search:
  /ai wiki <topic>
  /ai duck <query>

Translate:
  /ai translate [lang] <text>

Media:
  /ai media <mode> <input>   (flux, fixface, caption, burncaption, recon3d)

TTS:
  /ai tts <text>

Replicate direct:
  /ai replicate <MODEL_KEY> <prompt>
"""

USAGE_TEXT = "Usage: /ai <mode> <input>\nType /ai help for modes."
UNKNOWN_MODE_TEXT = "Unknown mode. Type /ai help for usage."
NOT_CONFIGURED_TEXT = "Replicate is not configured."


@dataclass(frozen=True, slots=True)
class AiCommand:
    mode: str
    args: tuple[str, ...]

    @property
    def rest(self) -> str:
        return " ".join(self.args)

    def tail(self, skip: int) -> str:
        return " ".join(self.args[skip:])


def is_ai_command(text: str | None) -> bool:
    if not text:
        return False
    head = text.strip().split(maxsplit=1)
    if not head:
        return False
    command = head[0].split("@", 1)[0].lower()
    return command == COMMAND


def parse_ai_command(text: str | None) -> AiCommand | None:
    if text is None or not is_ai_command(text):
        return None
    parts = text.split()[1:]
    if not parts:
        return AiCommand(mode="", args=())
    return AiCommand(mode=parts[0].lower(), args=tuple(parts[1:]))


def media_input(mode: str, value: str) -> dict[str, Any]:
    if mode == "flux":
        return {"prompt": value}
    if mode == "fixface":
        return {"image": value}
    return {"video": value}


def split_translate_args(rest: str) -> tuple[str, str]:
    tokens = rest.split()
    if len(tokens) > 1 and len(tokens[0]) <= 3:
        return tokens[0], " ".join(tokens[1:])
    return "en", rest


class CommandDispatcher:
    """Routes ``/ai`` messages to lookups or tracked Replicate jobs."""

    def __init__(
        self,
        *,
        notifier: Notifier,
        engine: JobEngine,
        lookups: Lookups,
        replicate: ReplicateClient | None,
        replicate_settings: ReplicateSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._notifier = notifier
        self._engine = engine
        self._lookups = lookups
        self._replicate = replicate
        self._settings = replicate_settings
        self._clock = clock

    async def handle_message(
        self, chat_id: ChatId, message_id: int | None, text: str | None
    ) -> None:
        command = parse_ai_command(text)
        if command is None:
            return
        logger.info("command.received", chat_id=chat_id, mode=command.mode)
        try:
            await self._dispatch(chat_id, message_id, command)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "command.failed",
                chat_id=chat_id,
                mode=command.mode,
                error=str(exc),
                error_type=exc.__class__.__name__,
                exc_info=True,
            )
            await self._reply(chat_id, f"Error: {exc}")

    async def _reply(self, chat_id: ChatId, text: str) -> None:
        try:
            await self._notifier.send_text(chat_id, text)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "command.reply_failed",
                chat_id=chat_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    async def _dispatch(
        self, chat_id: ChatId, message_id: int | None, command: AiCommand
    ) -> None:
        rest = command.rest
        match command.mode:
            case "":
                await self._reply(chat_id, USAGE_TEXT)
            case "help":
                await self._reply(chat_id, HELP_TEXT)
            case "wiki":
                if not rest:
                    await self._reply(chat_id, "Usage: /ai wiki <topic>")
                    return
                await self._reply(chat_id, await self._lookups.wiki_summary(rest))
            case "duck":
                if not rest:
                    await self._reply(chat_id, "Usage: /ai duck <query>")
                    return
                await self._reply(chat_id, await self._lookups.duck_duck(rest))
            case "translate":
                if not rest:
                    await self._reply(chat_id, "Usage: /ai translate [lang] <text>")
                    return
                to, text = split_translate_args(rest)
                await self._reply(chat_id, await self._lookups.translate(text, to))
            case "chat":
                if not rest:
                    await self._reply(chat_id, "Provide prompt: /ai chat <prompt>")
                    return
                await self._start(
                    chat_id,
                    message_id,
                    model=self._settings.chat_model,
                    missing="No chat model configured.",
                    input={"prompt": rest},
                    caption=rest,
                    started="Started chat job, you'll be notified when it's done.",
                )
            case "tts":
                if not rest:
                    await self._reply(chat_id, "Usage: /ai tts <text>")
                    return
                await self._start(
                    chat_id,
                    message_id,
                    model=self._settings.tts_model,
                    missing="No TTS provider configured.",
                    input={"text": rest},
                    caption=rest,
                    started="Started TTS job, you'll be notified when it's done.",
                )
            case "media":
                await self._media(chat_id, message_id, command)
            case "replicate":
                key = command.args[0] if command.args else ""
                prompt = command.tail(1)
                if not key or not prompt:
                    await self._reply(
                        chat_id, "Usage: /ai replicate <MODEL_KEY> <prompt>"
                    )
                    return
                await self._start(
                    chat_id,
                    message_id,
                    model=self._settings.models.get(key),
                    missing=f"No Replicate model configured as {key}.",
                    input={"prompt": prompt},
                    caption=prompt,
                    started="Replicate job started; you'll be notified when done.",
                )
            case _:
                await self._reply(chat_id, UNKNOWN_MODE_TEXT)

    async def _media(
        self, chat_id: ChatId, message_id: int | None, command: AiCommand
    ) -> None:
        sub = command.args[0].lower() if command.args else ""
        payload = command.tail(1)
        if not sub or not payload:
            await self._reply(
                chat_id,
                "Usage: /ai media <mode> <input>. Type /ai help for modes.",
            )
            return
        if sub not in MEDIA_MODES:
            await self._reply(
                chat_id,
                "No provider configured for that media mode.",
            )
            return
        await self._start(
            chat_id,
            message_id,
            model=self._settings.media_models.get(sub),
            missing="Replicate model not set for this mode.",
            input=media_input(sub, payload),
            caption=payload,
            started="Started job on Replicate, you'll be updated.",
        )

    async def _start(
        self,
        chat_id: ChatId,
        message_id: int | None,
        *,
        model: str | None,
        missing: str,
        input: dict[str, Any],
        caption: str,
        started: str,
    ) -> None:
        if self._replicate is None:
            await self._reply(chat_id, NOT_CONFIGURED_TEXT)
            return
        if model is None:
            await self._reply(chat_id, missing)
            return
        await self._notifier.send_typing(chat_id)
        try:
            await self.submit_job(
                chat_id,
                message_id,
                model=model,
                input=input,
                caption=caption,
                started=started,
            )
        except ReplicateError as exc:
            await self._reply(chat_id, f"Replicate error: {exc}")

    async def submit_job(
        self,
        chat_id: ChatId,
        message_id: int | None,
        *,
        model: str,
        input: dict[str, Any],
        caption: str | None,
        started: str,
    ) -> str:
        """Create a prediction and start tracking it.

        The "started" message is sent first so the record is written once,
        already pointing at its progress message. The chat context is also
        embedded in the prediction input so callbacks that arrive before
        the record can still be routed.
        """
        if self._replicate is None:
            raise ReplicateError(NOT_CONFIGURED_TEXT)
        sent = await self._notifier.send_text(chat_id, started)
        prediction_input = dict(input)
        prediction_input["telegram_chat_id"] = chat_id
        if message_id is not None:
            prediction_input["telegram_message_id"] = message_id
        prediction = await self._replicate.create_prediction(model, prediction_input)
        job_id = prediction.id
        record = JobRecord(
            job_id=job_id,
            chat_id=chat_id,
            caption=caption,
            created_at_ms=int(self._clock() * 1000),
        )
        if sent is not None:
            record.progress_message_id = sent.message_id
            record.progress_is_media = sent.is_media
        await self._engine.track(record)
        logger.info("job.submitted", job_id=job_id, chat_id=chat_id, model=model)
        return job_id
