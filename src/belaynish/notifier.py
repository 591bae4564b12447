from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .constants import DEFAULT_BRAND, TELEGRAM_HARD_LIMIT
from .jobs import ChatId
from .logging import get_logger
from .telegram.api_models import Message
from .telegram.client_api import BotClient

logger = get_logger(__name__)

MAX_CAPTION_CHARS = 1024


@dataclass(frozen=True, slots=True)
class SentMessage:
    message_id: int
    is_media: bool = False
    caption: str | None = None


class Notifier(Protocol):
    async def send_text(self, chat_id: ChatId, text: str) -> SentMessage | None: ...

    async def send_photo(
        self, chat_id: ChatId, url: str, caption: str | None = None
    ) -> SentMessage | None: ...

    async def send_video(
        self, chat_id: ChatId, url: str, caption: str | None = None
    ) -> SentMessage | None: ...

    async def send_document(
        self, chat_id: ChatId, url: str, caption: str | None = None
    ) -> SentMessage | None: ...

    async def edit_text(self, chat_id: ChatId, message_id: int, text: str) -> bool: ...

    async def edit_caption(
        self, chat_id: ChatId, message_id: int, caption: str
    ) -> bool: ...

    async def send_typing(self, chat_id: ChatId) -> None: ...


def with_prefix(text: str | None, brand: str = DEFAULT_BRAND) -> str:
    text = "" if text is None else str(text)
    if text.startswith(brand):
        return text
    return f"{brand}\n\n{text}"


def _trim(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def _sent(message: Message | None) -> SentMessage | None:
    if message is None:
        return None
    return SentMessage(
        message_id=message.message_id,
        is_media=message.is_media,
        caption=message.caption,
    )


class TelegramNotifier:
    """Notifier over the Bot API that brands every outgoing text and caption."""

    def __init__(self, bot: BotClient, *, brand: str = DEFAULT_BRAND) -> None:
        self._bot = bot
        self._brand = brand

    def _text(self, text: str) -> str:
        return _trim(with_prefix(text, self._brand), TELEGRAM_HARD_LIMIT)

    def _caption(self, caption: str | None) -> str | None:
        if not caption:
            return None
        return _trim(with_prefix(caption, self._brand), MAX_CAPTION_CHARS)

    async def send_text(self, chat_id: ChatId, text: str) -> SentMessage | None:
        return _sent(await self._bot.send_message(chat_id, self._text(text)))

    async def send_photo(
        self, chat_id: ChatId, url: str, caption: str | None = None
    ) -> SentMessage | None:
        return _sent(await self._bot.send_photo(chat_id, url, self._caption(caption)))

    async def send_video(
        self, chat_id: ChatId, url: str, caption: str | None = None
    ) -> SentMessage | None:
        return _sent(await self._bot.send_video(chat_id, url, self._caption(caption)))

    async def send_document(
        self, chat_id: ChatId, url: str, caption: str | None = None
    ) -> SentMessage | None:
        return _sent(
            await self._bot.send_document(chat_id, url, self._caption(caption))
        )

    async def edit_text(self, chat_id: ChatId, message_id: int, text: str) -> bool:
        edited = await self._bot.edit_message_text(chat_id, message_id, self._text(text))
        return edited is not None

    async def edit_caption(
        self, chat_id: ChatId, message_id: int, caption: str
    ) -> bool:
        edited = await self._bot.edit_message_caption(
            chat_id, message_id, self._caption(caption) or self._brand
        )
        return edited is not None

    async def send_typing(self, chat_id: ChatId) -> None:
        try:
            await self._bot.send_chat_action(chat_id, "typing")
        except Exception as exc:  # noqa: BLE001
            logger.debug(
                "notifier.typing_failed",
                chat_id=chat_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
