from __future__ import annotations

from pathlib import Path

import anyio
import typer
import uvicorn

from . import __version__
from .config import ConfigError
from .constants import TELEGRAM_WEBHOOK_PATH
from .logging import get_logger, setup_logging
from .runtime import build_runtime
from .server import create_app
from .settings import BelaynishSettings, load_settings
from .telegram.client_api import HttpBotClient

logger = get_logger(__name__)


def _print_version_and_exit() -> None:
    typer.echo(__version__)
    raise typer.Exit()


def _version_callback(value: bool) -> None:
    if value:
        _print_version_and_exit()


async def _register_webhook(settings: BelaynishSettings) -> bool:
    url = settings.server.public_endpoint(TELEGRAM_WEBHOOK_PATH)
    if url is None:
        raise ConfigError("Set server.public_url to register the Telegram webhook.")
    bot = HttpBotClient(settings.telegram.bot_token)
    try:
        ok = await bot.set_webhook(url, secret_token=settings.telegram.webhook_secret)
    finally:
        await bot.close()
    logger.info("telegram.webhook.registered", url=url, ok=ok)
    return ok


def run(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to belaynish.toml (default: ~/.belaynish/belaynish.toml).",
    ),
    host: str | None = typer.Option(None, "--host", help="Override server.host."),
    port: int | None = typer.Option(None, "--port", help="Override server.port."),
    set_webhook: bool = typer.Option(
        False,
        "--set-webhook/--no-set-webhook",
        help="Point the Telegram webhook at server.public_url before serving.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug/--no-debug",
        help="Log Telegram and Replicate requests and callback handling.",
    ),
) -> None:
    setup_logging(debug=debug)
    try:
        settings, config_path = load_settings(config)
        if set_webhook and not anyio.run(_register_webhook, settings):
            typer.echo("Telegram rejected the webhook registration.", err=True)
            raise typer.Exit(code=1)
    except ConfigError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1)
    runtime = build_runtime(settings, config_path=config_path)
    app = create_app(runtime)
    uvicorn.run(
        app,
        host=host or settings.server.host,
        port=port or settings.server.port,
        log_level="debug" if debug else "warning",
    )


def main() -> None:
    typer.run(run)


if __name__ == "__main__":
    main()
