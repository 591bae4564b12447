"""Telegram front end for Replicate jobs with webhook-driven progress."""

__version__ = "0.3.0"
