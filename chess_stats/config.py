"""
Configuration loading for chess-stats-api.

Loads non-secret settings from config.yaml; contact details for the
Chess.com User-Agent and the default player come from environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_USER_AGENT = "chess-stats-api (contact: you@example.com)"


class CachePolicy(BaseModel):
    """Response cache timing for one route."""

    max_age_seconds: int = Field(ge=0)
    stale_while_revalidate_seconds: int = Field(default=0, ge=0)


DEFAULT_CACHE_POLICIES: dict[str, CachePolicy] = {
    "sync-status": CachePolicy(max_age_seconds=5, stale_while_revalidate_seconds=10),
    "stats-summary": CachePolicy(max_age_seconds=20, stale_while_revalidate_seconds=120),
    "stats-rating-series": CachePolicy(max_age_seconds=20, stale_while_revalidate_seconds=120),
    "stats-openings": CachePolicy(max_age_seconds=30, stale_while_revalidate_seconds=120),
    "stats-streaks": CachePolicy(max_age_seconds=30, stale_while_revalidate_seconds=120),
    "stats-time-heatmap": CachePolicy(max_age_seconds=30, stale_while_revalidate_seconds=120),
    "games-list": CachePolicy(max_age_seconds=20, stale_while_revalidate_seconds=60),
    "games-detail": CachePolicy(max_age_seconds=60, stale_while_revalidate_seconds=120),
}


class AppConfig(BaseModel):
    """Application configuration. Contact data from env vars, rest from YAML."""

    environment: Literal["development", "production"] = "development"

    # Chess.com settings
    chesscom_base_url: str = "https://api.chess.com/pub"
    user_agent: str = DEFAULT_USER_AGENT
    default_username: Optional[str] = None
    rate_limit_ms: int = Field(default=300, ge=1)
    concurrency: int = Field(default=1, ge=1)
    max_months: int = Field(default=36, ge=1)

    # Cache settings
    cache_max_entries: int = Field(default=300, ge=1)
    cache_policies: dict[str, CachePolicy] = Field(
        default_factory=lambda: dict(DEFAULT_CACHE_POLICIES)
    )

    @field_validator("default_username")
    @classmethod
    def blank_username_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None

    @field_validator("cache_policies")
    @classmethod
    def merge_with_defaults(
        cls, value: dict[str, CachePolicy]
    ) -> dict[str, CachePolicy]:
        unknown = set(value) - set(DEFAULT_CACHE_POLICIES)
        if unknown:
            raise ValueError(f"Unknown cache policy routes: {sorted(unknown)}")
        return {**DEFAULT_CACHE_POLICIES, **value}

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def cache_policy(self, route_id: str) -> CachePolicy:
        """Look up the cache policy for a route id."""
        return self.cache_policies[route_id]


def load_config(config_path: str | None = None) -> AppConfig:
    """
    Load configuration from YAML file + environment variables.

    Args:
        config_path: Path to config.yaml. If None, reads CONFIG_PATH env var
                     (default: config.yaml in current directory).

    Returns:
        Validated AppConfig instance.
    """
    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}

    # Contact details come from the environment, overriding YAML
    config_data = dict(raw)
    username = os.environ.get("CHESSCOM_USERNAME")
    if username:
        config_data["default_username"] = username
    user_agent = os.environ.get("CHESSCOM_USER_AGENT", "").strip()
    if user_agent:
        config_data["user_agent"] = user_agent

    return AppConfig(**config_data)
