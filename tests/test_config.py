from pathlib import Path

import pytest

from ingest.config import GovernorConfig, IngestConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("INGEST_RATE_PER_MINUTE", "INGEST_MAX_CONCURRENT", "INGEST_IMAGE_MODE", "INGEST_CHECKPOINT"):
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    config = load_config()

    assert config.governor.rate_per_minute == 300
    assert config.governor.max_concurrent == 5
    assert config.images.selection_mode == "best"
    assert config.healing.max_attempts == 3
    assert config.fetch.attempt_timeout == 120.0


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("INGEST_RATE_PER_MINUTE", "10")
    monkeypatch.setenv("INGEST_IMAGE_MODE", "first")
    monkeypatch.setenv("INGEST_CHECKPOINT", "/tmp/heal.json")

    config = IngestConfig.from_env()

    assert config.governor.rate_per_minute == 10
    assert config.images.selection_mode == "first"
    assert config.healing.checkpoint_path == Path("/tmp/heal.json")


def test_yaml_overlay(tmp_path):
    path = tmp_path / "ingest.yaml"
    path.write_text(
        "governor:\n"
        "  rate_per_minute: 60\n"
        "  per_platform: true\n"
        "images:\n"
        "  cache_dir: /var/cache/ingest\n"
        "healing:\n"
        "  block_cooldown: 30\n",
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.governor.rate_per_minute == 60
    assert config.governor.per_platform is True
    assert config.governor.max_concurrent == 5
    assert config.images.cache_dir == Path("/var/cache/ingest")
    assert config.healing.block_cooldown == 30


def test_empty_yaml_keeps_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    assert load_config(path).governor == GovernorConfig()


@pytest.mark.parametrize(
    "content",
    [
        "governor:\n  rate: 10\n",
        "database:\n  dsn: x\n",
        "governor: 10\n",
        "- governor\n",
    ],
)
def test_invalid_yaml_rejected(tmp_path, content):
    path = tmp_path / "bad.yaml"
    path.write_text(content, encoding="utf-8")

    with pytest.raises(ValueError):
        load_config(path)
