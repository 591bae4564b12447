from __future__ import annotations

import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask

from .constants import REPLICATE_WEBHOOK_PATH, TELEGRAM_WEBHOOK_PATH
from .logging import get_logger
from .runtime import Runtime
from .telegram.api_models import decode_update

logger = get_logger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"
HOP_BY_HOP_HEADERS = frozenset(
    {"connection", "keep-alive", "transfer-encoding", "upgrade", "te", "trailer"}
)


async def _read_json(request: Request) -> object | None:
    try:
        return await request.json()
    except ValueError:
        return None


def create_app(runtime: Runtime, *, close_on_shutdown: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        logger.info("server.started", brand=runtime.settings.brand)
        try:
            yield
        finally:
            if close_on_shutdown:
                await runtime.aclose()
            logger.info("server.stopped")

    app = FastAPI(title="belaynish", lifespan=lifespan)
    brand = runtime.settings.brand
    webhook_secret = runtime.settings.telegram.webhook_secret

    @app.get("/keepalive", response_class=PlainTextResponse)
    async def keepalive() -> str:
        return f"{brand} alive"

    @app.post(REPLICATE_WEBHOOK_PATH)
    async def replicate_webhook(
        request: Request, background: BackgroundTasks
    ) -> PlainTextResponse:
        payload = await _read_json(request)
        if not isinstance(payload, dict):
            logger.info("callback.invalid_body")
            return PlainTextResponse("invalid body", status_code=400)
        # acknowledge first; the engine runs after the response is sent
        background.add_task(runtime.engine.handle, payload)
        return PlainTextResponse("ok")

    @app.post(TELEGRAM_WEBHOOK_PATH)
    async def telegram_webhook(
        request: Request, background: BackgroundTasks
    ) -> PlainTextResponse:
        if webhook_secret is not None:
            provided = request.headers.get(SECRET_HEADER, "")
            if not secrets.compare_digest(provided, webhook_secret):
                logger.warning("telegram.webhook.bad_secret")
                return PlainTextResponse("forbidden", status_code=403)
        payload = await _read_json(request)
        if payload is None:
            return PlainTextResponse("invalid update", status_code=400)
        update = decode_update(payload)
        if update is None:
            logger.info("telegram.webhook.undecodable")
            return PlainTextResponse("ok")
        message = update.message or update.edited_message
        if message is not None and message.text:
            background.add_task(
                runtime.dispatcher.handle_message,
                message.chat.id,
                message.message_id,
                message.text,
            )
        return PlainTextResponse("ok")

    @app.get("/stream", response_model=None)
    async def stream(
        file: str | None = None, url: str | None = None
    ) -> StreamingResponse | PlainTextResponse:
        target = file or url
        if not target:
            return PlainTextResponse("Missing file URL", status_code=400)
        client = runtime.stream_client
        try:
            request = client.build_request("GET", target)
            upstream = await client.send(request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning(
                "stream.failed",
                url=target,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return PlainTextResponse(f"Streaming failed: {exc}", status_code=502)
        headers = {
            key: value
            for key, value in upstream.headers.items()
            if key.lower() not in HOP_BY_HOP_HEADERS
        }
        return StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            headers=headers,
            background=BackgroundTask(upstream.aclose),
        )

    return app
