"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (STATI__ISG__TTL_SECONDS=600)
  2. stati.yaml             (searched in cwd, then platform config dir)
  3. Hardcoded defaults

No config file is required; every field has a default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

from stati_isg.constants import (
    CACHE_DIR_NAME,
    DEFAULT_LOCK_POLL_INTERVAL_SECONDS,
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    DEFAULT_MAX_AGE_CAP_DAYS,
    DEFAULT_SRC_DIR,
    DEFAULT_TTL_SECONDS,
    MAX_AGE_CAP_DAYS_LIMIT,
    MAX_AGING_RULE_TTL_SECONDS,
    MAX_TTL_SECONDS,
)


def _find_config_file() -> str | None:
    """Return the path of the first stati.yaml found, or None."""
    candidates = [
        Path("stati.yaml"),
        Path(platformdirs.user_config_dir("stati")) / "stati.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class SiteSettings(BaseModel):
    src_dir: Path = Path(DEFAULT_SRC_DIR)
    cache_dir: Path = Path(CACHE_DIR_NAME)

    def resolved_src_dir(self) -> Path:
        return self.src_dir.expanduser().resolve()

    def resolved_cache_dir(self) -> Path:
        return self.cache_dir.expanduser().resolve()


class AgingRule(BaseModel):
    """Absolute TTL for content up to ``until_days`` old."""

    until_days: int = Field(gt=0)
    ttl_seconds: int = Field(ge=0, le=MAX_AGING_RULE_TTL_SECONDS)


class ISGSettings(BaseModel):
    enabled: bool = True
    ttl_seconds: int = Field(default=DEFAULT_TTL_SECONDS, ge=0, le=MAX_TTL_SECONDS)
    max_age_cap_days: int | None = Field(
        default=DEFAULT_MAX_AGE_CAP_DAYS, gt=0, le=MAX_AGE_CAP_DAYS_LIMIT
    )
    aging: list[AgingRule] = []

    @model_validator(mode="after")
    def validate_aging_rules(self) -> ISGSettings:
        seen: set[int] = set()
        for index, rule in enumerate(self.aging):
            if rule.until_days in seen:
                raise ValueError(
                    f"Duplicate aging rule for {rule.until_days} days (aging[{index}]). "
                    "Each until_days value must be unique."
                )
            seen.add(rule.until_days)
            if self.max_age_cap_days is not None and rule.until_days > self.max_age_cap_days:
                raise ValueError(
                    f"Aging rule for {rule.until_days} days exceeds max_age_cap_days "
                    f"({self.max_age_cap_days}). Rule will never be used."
                )

        until_days = [rule.until_days for rule in self.aging]
        if until_days != sorted(until_days):
            raise ValueError(
                "Aging rules must be sorted by until_days in ascending order: "
                f"got {until_days}."
            )
        return self


class BuildSettings(BaseModel):
    concurrency: int = Field(default=8, ge=1)
    lock_timeout_seconds: float = Field(default=DEFAULT_LOCK_TIMEOUT_SECONDS, ge=0)
    lock_poll_interval_seconds: float = Field(default=DEFAULT_LOCK_POLL_INTERVAL_SECONDS, gt=0)


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "text"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: STATI__BUILD__CONCURRENCY=4
        env_prefix="STATI__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    site: SiteSettings = SiteSettings()
    isg: ISGSettings = ISGSettings()
    build: BuildSettings = BuildSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Explicit keyword arguments win
            env_settings,  # STATI__* variables
            YamlConfigSettingsSource(settings_cls),  # stati.yaml
            # No .env or secrets-dir sources
        )
