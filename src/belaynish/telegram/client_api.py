from __future__ import annotations

from typing import Any, Protocol, TypeVar

import httpx
import msgspec

from ..logging import get_logger
from .api_models import Message

logger = get_logger(__name__)

T = TypeVar("T")


class RetryAfter(Exception):
    def __init__(self, retry_after: float, description: str | None = None) -> None:
        super().__init__(description or f"retry after {retry_after}")
        self.retry_after = float(retry_after)
        self.description = description


class TelegramRetryAfter(RetryAfter):
    pass


def retry_after_from_payload(payload: dict[str, Any]) -> float | None:
    params = payload.get("parameters")
    if isinstance(params, dict):
        retry_after = params.get("retry_after")
        if isinstance(retry_after, (int, float)):
            return float(retry_after)
    return None


class BotClient(Protocol):
    async def close(self) -> None: ...

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        reply_to_message_id: int | None = None,
        parse_mode: str | None = None,
    ) -> Message | None: ...

    async def send_photo(
        self, chat_id: int | str, photo: str, caption: str | None = None
    ) -> Message | None: ...

    async def send_video(
        self, chat_id: int | str, video: str, caption: str | None = None
    ) -> Message | None: ...

    async def send_document(
        self, chat_id: int | str, document: str, caption: str | None = None
    ) -> Message | None: ...

    async def send_voice(
        self,
        chat_id: int | str,
        voice: bytes,
        caption: str | None = None,
        filename: str = "voice.ogg",
    ) -> Message | None: ...

    async def send_chat_action(
        self, chat_id: int | str, action: str = "typing"
    ) -> bool: ...

    async def edit_message_text(
        self,
        chat_id: int | str,
        message_id: int,
        text: str,
        parse_mode: str | None = None,
    ) -> Message | None: ...

    async def edit_message_caption(
        self,
        chat_id: int | str,
        message_id: int,
        caption: str,
        parse_mode: str | None = None,
    ) -> Message | None: ...

    async def set_webhook(
        self, url: str, *, secret_token: str | None = None
    ) -> bool: ...


class HttpBotClient:
    def __init__(
        self,
        token: str,
        *,
        timeout_s: float = 60,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not token:
            raise ValueError("Telegram token is empty")
        self._base = f"https://api.telegram.org/bot{token}"
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)
        self._owns_http_client = http_client is None

    async def close(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _parse_telegram_envelope(
        self,
        *,
        method: str,
        resp: httpx.Response,
        payload: Any,
    ) -> Any | None:
        if not isinstance(payload, dict):
            logger.error(
                "telegram.invalid_payload",
                method=method,
                url=str(resp.request.url),
                payload=payload,
            )
            return None

        if not payload.get("ok"):
            if payload.get("error_code") == 429:
                retry_after = retry_after_from_payload(payload)
                retry_after = 5.0 if retry_after is None else retry_after
                logger.warning(
                    "telegram.rate_limited",
                    method=method,
                    url=str(resp.request.url),
                    retry_after=retry_after,
                )
                raise TelegramRetryAfter(retry_after)
            logger.error(
                "telegram.api_error",
                method=method,
                url=str(resp.request.url),
                payload=payload,
            )
            return None

        logger.debug("telegram.response", method=method, payload=payload)
        return payload.get("result")

    async def _post(
        self,
        method: str,
        json_data: dict[str, Any],
        *,
        files: dict[str, tuple[str, bytes, str]] | None = None,
    ) -> Any | None:
        logger.debug("telegram.request", method=method, payload=json_data)
        url = f"{self._base}/{method}"
        try:
            if files is None:
                resp = await self._http_client.post(url, json=json_data)
            else:
                # multipart form fields must be strings
                form = {key: str(value) for key, value in json_data.items()}
                resp = await self._http_client.post(url, data=form, files=files)
        except httpx.HTTPError as exc:
            failed_url = getattr(exc.request, "url", None)
            logger.error(
                "telegram.network_error",
                method=method,
                url=str(failed_url) if failed_url is not None else None,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

        try:
            response_payload = resp.json()
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "telegram.bad_response",
                method=method,
                status=resp.status_code,
                url=str(resp.request.url),
                error=str(exc),
                error_type=exc.__class__.__name__,
                body=resp.text,
            )
            return None

        # Telegram reports errors (including 429) inside the JSON envelope
        return self._parse_telegram_envelope(
            method=method,
            resp=resp,
            payload=response_payload,
        )

    def _decode_result(
        self,
        *,
        method: str,
        payload: Any,
        model: type[T],
    ) -> T | None:
        if payload is None or payload is True:
            return None
        try:
            return msgspec.convert(payload, type=model)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "telegram.decode_error",
                method=method,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

    async def _send_media(
        self,
        method: str,
        field: str,
        chat_id: int | str,
        url: str,
        caption: str | None,
    ) -> Message | None:
        params: dict[str, Any] = {"chat_id": chat_id, field: url}
        if caption is not None:
            params["caption"] = caption
        result = await self._post(method, params)
        return self._decode_result(method=method, payload=result, model=Message)

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        reply_to_message_id: int | None = None,
        parse_mode: str | None = None,
    ) -> Message | None:
        params: dict[str, Any] = {"chat_id": chat_id, "text": text}
        if reply_to_message_id is not None:
            params["reply_to_message_id"] = reply_to_message_id
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        result = await self._post("sendMessage", params)
        return self._decode_result(method="sendMessage", payload=result, model=Message)

    async def send_photo(
        self, chat_id: int | str, photo: str, caption: str | None = None
    ) -> Message | None:
        return await self._send_media("sendPhoto", "photo", chat_id, photo, caption)

    async def send_video(
        self, chat_id: int | str, video: str, caption: str | None = None
    ) -> Message | None:
        return await self._send_media("sendVideo", "video", chat_id, video, caption)

    async def send_document(
        self, chat_id: int | str, document: str, caption: str | None = None
    ) -> Message | None:
        return await self._send_media(
            "sendDocument", "document", chat_id, document, caption
        )

    async def send_voice(
        self,
        chat_id: int | str,
        voice: bytes,
        caption: str | None = None,
        filename: str = "voice.ogg",
    ) -> Message | None:
        params: dict[str, Any] = {"chat_id": chat_id}
        if caption is not None:
            params["caption"] = caption
        result = await self._post(
            "sendVoice", params, files={"voice": (filename, voice, "audio/ogg")}
        )
        return self._decode_result(method="sendVoice", payload=result, model=Message)

    async def send_chat_action(
        self, chat_id: int | str, action: str = "typing"
    ) -> bool:
        result = await self._post(
            "sendChatAction", {"chat_id": chat_id, "action": action}
        )
        return bool(result)

    async def edit_message_text(
        self,
        chat_id: int | str,
        message_id: int,
        text: str,
        parse_mode: str | None = None,
    ) -> Message | None:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
        }
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        result = await self._post("editMessageText", params)
        return self._decode_result(
            method="editMessageText",
            payload=result,
            model=Message,
        )

    async def edit_message_caption(
        self,
        chat_id: int | str,
        message_id: int,
        caption: str,
        parse_mode: str | None = None,
    ) -> Message | None:
        params: dict[str, Any] = {
            "chat_id": chat_id,
            "message_id": message_id,
            "caption": caption,
        }
        if parse_mode is not None:
            params["parse_mode"] = parse_mode
        result = await self._post("editMessageCaption", params)
        return self._decode_result(
            method="editMessageCaption",
            payload=result,
            model=Message,
        )

    async def set_webhook(
        self, url: str, *, secret_token: str | None = None
    ) -> bool:
        params: dict[str, Any] = {"url": url, "allowed_updates": ["message"]}
        if secret_token is not None:
            params["secret_token"] = secret_token
        result = await self._post("setWebhook", params)
        return bool(result)
