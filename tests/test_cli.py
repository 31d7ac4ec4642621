import pytest
from click.testing import CliRunner

from ingest.cli import cli
from ingest.images import BadHashRegistry


@pytest.fixture
def cache_dir(monkeypatch, tmp_path):
    path = tmp_path / "images"
    monkeypatch.setenv("INGEST_IMAGE_CACHE_DIR", str(path))
    for name in ("PG_DSN", "DATABASE_URL", "SUPABASE_URL", "SUPABASE_KEY"):
        monkeypatch.delenv(name, raising=False)
    return path


def test_mark_bad_registers_hashes(cache_dir):
    runner = CliRunner()

    result = runner.invoke(cli, ["mark-bad", "ABC123", "def456", "--reason", "watermark"])
    again = runner.invoke(cli, ["mark-bad", "abc123"])

    assert result.exit_code == 0, result.output
    assert "Added 2 hash(es)" in result.output
    assert "already registered" in again.output
    registry = BadHashRegistry(cache_dir / "bad_hashes.json")
    assert registry.reason("abc123") == "watermark"
    assert "def456" in registry


def test_audit_images_on_empty_cache(cache_dir):
    result = CliRunner().invoke(cli, ["audit-images"])

    assert result.exit_code == 0, result.output
    assert "Flagged 0 image(s)" in result.output


def test_scrape_rejects_unknown_host(cache_dir):
    result = CliRunner().invoke(cli, ["scrape", "https://example.com/item/1.html"])

    assert result.exit_code == 2
    assert "cannot tell the platform" in result.output


def test_scrape_unknown_id_reports_not_found(cache_dir):
    result = CliRunner().invoke(cli, ["scrape", "no-such-listing"])

    assert result.exit_code == 1
    assert '"status": "not_found"' in result.output


def test_config_overlay_must_exist(cache_dir, tmp_path):
    result = CliRunner().invoke(cli, ["--config", str(tmp_path / "missing.yaml"), "audit-images"])

    assert result.exit_code == 2
