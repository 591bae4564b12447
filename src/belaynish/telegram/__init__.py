"""Telegram Bot API client and update models."""

from .client_api import BotClient, HttpBotClient, TelegramRetryAfter

__all__ = ["BotClient", "HttpBotClient", "TelegramRetryAfter"]
