from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings

from channel_mirror.env import get_env

DEFAULT_IFRAME_ALLOWLIST = (
    "www.youtube-nocookie.com",
    "www.youtube.com",
    "youtube.com",
    "youtube-nocookie.com",
    "open.spotify.com",
    "player.spotify.com",
    "bandcamp.com",
    "music.apple.com",
    "embed.music.apple.com",
    "w.soundcloud.com",
    "player.vimeo.com",
)


def _env_flag_enabled(value: Any) -> bool:
    # Anything but an explicit "false" keeps the feature on.
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() != "false"


def _env_flag_set(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


class Settings(BaseSettings):
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    # Upstream
    channel: str = ""
    telegram_host: str = Field(
        default="t.me",
        validation_alias=AliasChoices("telegram_host", "host"),
    )
    http_timeout_seconds: float = 10.0
    http_retries: int = 3
    http_retry_delay_seconds: float = 0.1

    # Output rewriting
    static_proxy: str = "/static/"
    static_proxy_origin: str | None = None
    site_url: str = "/"

    # Modes
    enable_embeds: bool = True
    offline_build: bool = False

    # Embeds
    embeds_cache_ttl_days: float = 7
    embeds_enable_oembed: bool = True
    embeds_iframe_allowlist: str = ",".join(DEFAULT_IFRAME_ALLOWLIST)
    embeds_cache_dir: Path = Path(".cache/embeds")

    # Result cache
    result_cache_ttl_seconds: float = 300
    result_cache_max_bytes: int = 50 * 1024 * 1024

    log_level: str = "INFO"

    @field_validator("enable_embeds", "embeds_enable_oembed", mode="before")
    @classmethod
    def _parse_enabled_flag(cls, value: Any) -> bool:
        return _env_flag_enabled(value)

    @field_validator("offline_build", mode="before")
    @classmethod
    def _parse_set_flag(cls, value: Any) -> bool:
        return _env_flag_set(value)

    @field_validator("embeds_cache_ttl_days", mode="before")
    @classmethod
    def _parse_ttl(cls, value: Any) -> float:
        try:
            days = float(value)
        except (TypeError, ValueError):
            return 7.0
        return days if days >= 0 else 7.0

    @property
    def media_proxy(self) -> str:
        return self.static_proxy_origin or self.static_proxy

    @property
    def iframe_allowlist(self) -> tuple[str, ...]:
        entries = (
            entry.strip().lower()
            for entry in self.embeds_iframe_allowlist.split(",")
        )
        return tuple(entry for entry in entries if entry)

    @property
    def embeds_cache_ttl_seconds(self) -> float:
        return self.embeds_cache_ttl_days * 86400

    @classmethod
    def from_env(cls, *sources: Mapping[str, Any] | None) -> "Settings":
        """Build settings from injected mappings such as runtime bindings.

        Values found in ``sources`` take precedence over the process
        environment and the ``.env`` file is not read.
        """
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            value = get_env(name, *sources)
            if value is None and name == "telegram_host":
                value = get_env("host", *sources)
            if value is not None:
                values[name] = value
        return cls(_env_file=None, **values)
