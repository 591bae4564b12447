from __future__ import annotations

from pathlib import Path

TELEGRAM_HARD_LIMIT = 4096
HOME_CONFIG_PATH = Path.home() / ".belaynish" / "belaynish.toml"
JOBS_FILENAME = "jobs.json"
DEFAULT_BRAND = "Belaynish"
REPLICATE_WEBHOOK_PATH = "/replicate-webhook"
TELEGRAM_WEBHOOK_PATH = "/webhook"
