from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

METADATA_FILENAME = "types.db"


class ProxySettings(BaseSettings):
    """Configuration for the image caching proxy."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGEPROXY_", case_sensitive=False, extra="ignore"
    )

    host: str = Field(default="127.0.0.1", description="address to listen on")
    port: int = Field(default=8080, ge=0, le=65535)
    cache_dir: Path = Field(default=Path("cache"), description="cache directory")
    size_cap: int = Field(
        default=256 * 1024,
        gt=0,
        description="responses of this many bytes or more are never cached",
    )
    x_accel_redirect: str | None = Field(
        default=None,
        description="nginx X-Accel-Redirect internal location for the cache directory",
    )
    connect_timeout: float = Field(default=60.0, gt=0)
    read_timeout: float = Field(default=300.0, gt=0)

    @field_validator("x_accel_redirect", mode="before")
    @classmethod
    def _blank_prefix_is_unset(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cache_dir", mode="after")
    @classmethod
    def _expand_cache_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def metadata_path(self) -> Path:
        return self.cache_dir / METADATA_FILENAME

    @property
    def delegated(self) -> bool:
        """Whether cached bodies are served by the front-end proxy."""
        return self.x_accel_redirect is not None


def load_settings_from_env() -> ProxySettings:
    """Load proxy settings from environment variables.

    Returns:
        ProxySettings instance populated from environment variables.
    """
    return ProxySettings()
