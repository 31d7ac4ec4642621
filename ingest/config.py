"""Runtime configuration loaded from environment and optional YAML overlay."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

LOGGER = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


@dataclass
class FetchConfig:
    """Page fetch settings."""

    timeout: float = 20.0
    render_timeout: float = 90.0  # Hard ceiling for headless rendering
    headless: bool = True
    attempt_timeout: float = 120.0  # Whole scrape attempt, image resolution included

    @classmethod
    def from_env(cls) -> "FetchConfig":
        return cls(
            timeout=_env_float("INGEST_FETCH_TIMEOUT", cls.timeout),
            render_timeout=_env_float("INGEST_RENDER_TIMEOUT", cls.render_timeout),
            headless=_env_bool("INGEST_HEADLESS", cls.headless),
            attempt_timeout=_env_float("INGEST_ATTEMPT_TIMEOUT", cls.attempt_timeout),
        )


@dataclass
class ImageConfig:
    """Image cache and bad-image thresholds."""

    cache_dir: Path = Path("cache/images")
    min_side_px: int = 200
    min_bytes: int = 5000
    min_stddev: float = 4.0  # Grayscale deviation below this is a flat placeholder
    max_candidates: int = 6
    selection_mode: str = "best"  # "best" or "first"
    download_timeout: float = 15.0
    bucket: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ImageConfig":
        return cls(
            cache_dir=Path(os.getenv("INGEST_IMAGE_CACHE_DIR", str(cls.cache_dir))),
            min_side_px=_env_int("INGEST_IMAGE_MIN_SIDE", cls.min_side_px),
            min_bytes=_env_int("INGEST_IMAGE_MIN_BYTES", cls.min_bytes),
            min_stddev=_env_float("INGEST_IMAGE_MIN_STDDEV", cls.min_stddev),
            max_candidates=_env_int("INGEST_IMAGE_MAX_CANDIDATES", cls.max_candidates),
            selection_mode=os.getenv("INGEST_IMAGE_MODE", cls.selection_mode),
            download_timeout=_env_float("INGEST_IMAGE_TIMEOUT", cls.download_timeout),
            bucket=os.getenv("INGEST_IMAGE_BUCKET") or None,
        )


@dataclass
class GovernorConfig:
    """Rate limiting and in-flight bounds for scrape attempts."""

    rate_per_minute: int = 300
    max_concurrent: int = 5
    per_platform: bool = False
    cache_ttl: float = 300.0
    cache_max_entries: int = 100

    @classmethod
    def from_env(cls) -> "GovernorConfig":
        return cls(
            rate_per_minute=_env_int("INGEST_RATE_PER_MINUTE", cls.rate_per_minute),
            max_concurrent=_env_int("INGEST_MAX_CONCURRENT", cls.max_concurrent),
            per_platform=_env_bool("INGEST_RATE_PER_PLATFORM", cls.per_platform),
            cache_ttl=_env_float("INGEST_CACHE_TTL", cls.cache_ttl),
            cache_max_entries=_env_int("INGEST_CACHE_MAX_ENTRIES", cls.cache_max_entries),
        )


@dataclass
class HealingConfig:
    """Batch re-scrape settings."""

    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_max: float = 300.0
    inter_batch_delay: float = 0.0
    max_consecutive_blocks: int = 5
    block_cooldown: float = 300.0
    checkpoint_path: Path = Path("cache/healing-progress.json")
    progress_every: int = 10

    @classmethod
    def from_env(cls) -> "HealingConfig":
        return cls(
            max_attempts=_env_int("INGEST_MAX_ATTEMPTS", cls.max_attempts),
            backoff_base=_env_float("INGEST_BACKOFF_BASE", cls.backoff_base),
            backoff_max=_env_float("INGEST_BACKOFF_MAX", cls.backoff_max),
            inter_batch_delay=_env_float("INGEST_BATCH_DELAY", cls.inter_batch_delay),
            max_consecutive_blocks=_env_int("INGEST_MAX_CONSECUTIVE_BLOCKS", cls.max_consecutive_blocks),
            block_cooldown=_env_float("INGEST_BLOCK_COOLDOWN", cls.block_cooldown),
            checkpoint_path=Path(os.getenv("INGEST_CHECKPOINT", str(cls.checkpoint_path))),
            progress_every=_env_int("INGEST_PROGRESS_EVERY", cls.progress_every),
        )


@dataclass
class IngestConfig:
    """Top-level configuration."""

    fetch: FetchConfig = field(default_factory=FetchConfig)
    images: ImageConfig = field(default_factory=ImageConfig)
    governor: GovernorConfig = field(default_factory=GovernorConfig)
    healing: HealingConfig = field(default_factory=HealingConfig)

    @classmethod
    def from_env(cls) -> "IngestConfig":
        return cls(
            fetch=FetchConfig.from_env(),
            images=ImageConfig.from_env(),
            governor=GovernorConfig.from_env(),
            healing=HealingConfig.from_env(),
        )


def _overlay(section: Any, values: Dict[str, Any]) -> Any:
    known = {f.name: f for f in fields(section)}
    updates = {}
    for key, value in values.items():
        if key not in known:
            raise ValueError(f"unknown config key: {key}")
        current = getattr(section, key)
        updates[key] = Path(value) if isinstance(current, Path) else value
    return replace(section, **updates)


def load_config(path: str | Path | None = None) -> IngestConfig:
    """Build configuration from `.env`, environment and an optional YAML file.

    Parameters
    ----------
    path : str | Path, optional
        YAML file with ``fetch``, ``images``, ``governor`` and ``healing`` sections

    Returns
    -------
    IngestConfig
        Resolved configuration
    """
    load_dotenv()
    config = IngestConfig.from_env()
    if path is None:
        return config

    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("config file must be a mapping")

    for name, values in data.items():
        if not hasattr(config, name):
            raise ValueError(f"unknown config section: {name}")
        if not isinstance(values, dict):
            raise ValueError(f"config section {name} must be a mapping")
        setattr(config, name, _overlay(getattr(config, name), values))

    LOGGER.debug("Loaded config overlay from %s", path)
    return config
