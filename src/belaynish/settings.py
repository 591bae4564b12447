from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .config import ConfigError, read_config
from .constants import DEFAULT_BRAND, HOME_CONFIG_PATH, JOBS_FILENAME

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

MEDIA_MODES = ("flux", "fixface", "caption", "burncaption", "recon3d")


class TelegramSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    bot_token: NonEmptyStr
    webhook_secret: NonEmptyStr | None = None


class ReplicateSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    api_token: NonEmptyStr | None = None
    api_base: NonEmptyStr = "https://api.replicate.com/v1"
    chat_model: NonEmptyStr | None = None
    tts_model: NonEmptyStr | None = None
    media_models: dict[str, NonEmptyStr] = Field(default_factory=dict)
    models: dict[str, NonEmptyStr] = Field(default_factory=dict)

    @field_validator("media_models")
    @classmethod
    def _validate_media_modes(cls, value: dict[str, str]) -> dict[str, str]:
        unknown = sorted(set(value) - set(MEDIA_MODES))
        if unknown:
            available = ", ".join(MEDIA_MODES)
            raise ValueError(
                f"unknown media modes {unknown}; available: {available}"
            )
        return value


class ServerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    host: NonEmptyStr = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    public_url: NonEmptyStr | None = None

    def public_endpoint(self, path: str) -> str | None:
        if self.public_url is None:
            return None
        return f"{self.public_url.rstrip('/')}{path}"


class BelaynishSettings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        env_prefix="BELAYNISH__",
        env_nested_delimiter="__",
        str_strip_whitespace=True,
    )

    brand: NonEmptyStr = DEFAULT_BRAND
    jobs_path: NonEmptyStr | None = None
    telegram: TelegramSettings
    replicate: ReplicateSettings = Field(default_factory=ReplicateSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    @model_validator(mode="before")
    @classmethod
    def _reject_flat_token(cls, data: Any) -> Any:
        if isinstance(data, dict) and "bot_token" in data:
            raise ValueError("Move bot_token under [telegram].")
        return data

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    def resolve_jobs_path(self, *, config_path: Path) -> Path:
        if self.jobs_path is None:
            return config_path.with_name(JOBS_FILENAME)
        path = Path(self.jobs_path).expanduser()
        if not path.is_absolute():
            path = config_path.parent / path
        return path


def load_settings(path: str | Path | None = None) -> tuple[BelaynishSettings, Path]:
    cfg_path = Path(path).expanduser() if path else HOME_CONFIG_PATH
    if cfg_path.exists() and not cfg_path.is_file():
        raise ConfigError(f"Config path {cfg_path} exists but is not a file.")
    # surfaces missing files and malformed TOML as ConfigError
    read_config(cfg_path)
    return _load_settings_from_path(cfg_path), cfg_path


def validate_settings_data(
    data: dict[str, Any], *, config_path: Path
) -> BelaynishSettings:
    try:
        return BelaynishSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {config_path}: {exc}") from exc


def _load_settings_from_path(cfg_path: Path) -> BelaynishSettings:
    cfg = dict(BelaynishSettings.model_config)
    cfg["toml_file"] = cfg_path
    Bound = type(
        "BelaynishSettingsBound",
        (BelaynishSettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    try:
        return Bound()
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {cfg_path}: {exc}") from exc
    except Exception as exc:  # pragma: no cover - safety net
        raise ConfigError(f"Failed to load config {cfg_path}: {exc}") from exc
