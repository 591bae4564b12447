from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import httpx

from .commands import CommandDispatcher
from .constants import REPLICATE_WEBHOOK_PATH
from .engine import JobEngine
from .jobs import JsonJobStore
from .lookups import Lookups
from .notifier import TelegramNotifier
from .replicate import ReplicateClient
from .settings import BelaynishSettings
from .telegram.client_api import BotClient, HttpBotClient


@dataclass(slots=True)
class Runtime:
    settings: BelaynishSettings
    bot: BotClient
    engine: JobEngine
    dispatcher: CommandDispatcher
    lookups: Lookups
    replicate: ReplicateClient | None
    stream_client: httpx.AsyncClient

    async def aclose(self) -> None:
        await self.bot.close()
        await self.lookups.close()
        if self.replicate is not None:
            await self.replicate.close()
        await self.stream_client.aclose()


def build_runtime(settings: BelaynishSettings, *, config_path: Path) -> Runtime:
    bot = HttpBotClient(settings.telegram.bot_token)
    notifier = TelegramNotifier(bot, brand=settings.brand)
    store = JsonJobStore(settings.resolve_jobs_path(config_path=config_path))
    replicate = None
    if settings.replicate.api_token is not None:
        replicate = ReplicateClient(
            settings.replicate.api_token,
            api_base=settings.replicate.api_base,
            webhook_url=settings.server.public_endpoint(REPLICATE_WEBHOOK_PATH),
        )
    lookups = Lookups()
    engine = JobEngine(store=store, notifier=notifier)
    return Runtime(
        settings=settings,
        bot=bot,
        engine=engine,
        dispatcher=CommandDispatcher(
            notifier=notifier,
            engine=engine,
            lookups=lookups,
            replicate=replicate,
            replicate_settings=settings.replicate,
        ),
        lookups=lookups,
        replicate=replicate,
        stream_client=httpx.AsyncClient(timeout=None, follow_redirects=True),
    )
