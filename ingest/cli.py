"""Command line for scraping, healing and image maintenance."""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional

import click
import orjson

from .catalog import CatalogStore, InMemoryCatalogStore, PostgresCatalogStore
from .config import IngestConfig, load_config
from .fetcher import Fetcher
from .governor import ConcurrencyGovernor
from .healing import HealingOrchestrator
from .images import ImageCache, SupabaseImageMirror
from .models import ExternalListing, Platform, canonical_url, platform_for_url
from .pipeline import DetailPipeline
from .service import ScrapeService

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )


def _echo_json(data: dict) -> None:
    click.echo(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode())


@dataclass
class Runtime:
    """Wired components for one CLI invocation."""

    config: IngestConfig
    catalog: CatalogStore
    images: ImageCache
    fetcher: Fetcher
    service: ScrapeService

    def close(self) -> None:
        self.service.close()
        self.fetcher.close()
        self.images.close()


def _catalog() -> CatalogStore:
    if os.getenv("PG_DSN") or os.getenv("DATABASE_URL"):
        return PostgresCatalogStore()
    LOGGER.warning("PG_DSN not set, using an in-memory catalog")
    return InMemoryCatalogStore()


def build_images(config: IngestConfig) -> ImageCache:
    return ImageCache(config.images, mirror=SupabaseImageMirror.from_env(config.images.bucket))


def build_runtime(config: IngestConfig, catalog: Optional[CatalogStore] = None) -> Runtime:
    """Wire fetcher, image cache, governor and scrape service from config."""
    catalog = catalog or _catalog()
    images = build_images(config)
    fetcher = Fetcher(config.fetch)
    pipeline = DetailPipeline(fetcher, images)
    service = ScrapeService(
        pipeline,
        catalog,
        governor=ConcurrencyGovernor(config.governor),
        attempt_timeout=config.fetch.attempt_timeout,
    )
    return Runtime(config=config, catalog=catalog, images=images, fetcher=fetcher, service=service)


@click.group()
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="YAML config overlay")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[str], verbose: bool) -> None:
    """Product detail ingestion CLI."""
    _setup_logging(verbose)
    ctx.obj = load_config(config_path)


@cli.command()
@click.argument("target")
@click.option(
    "--platform",
    type=click.Choice([platform.value for platform in Platform]),
    help="Platform for a bare URL (guessed from the host otherwise)",
)
@click.option("--force", is_flag=True, help="Bypass the result cache")
@click.pass_obj
def scrape(config: IngestConfig, target: str, platform: Optional[str], force: bool) -> None:
    """Scrape one listing by catalog id or URL."""
    runtime = build_runtime(config)
    try:
        listing = runtime.catalog.get_listing(target)
        if listing is None and ("://" in target or target.startswith("//")):
            resolved = Platform(platform) if platform else platform_for_url(target)
            if resolved is None:
                raise click.BadParameter(f"cannot tell the platform of {target}", param_hint="TARGET")
            url = canonical_url(target)
            listing = runtime.catalog.get_listing(url) or ExternalListing(id=url, platform=resolved, url=url)
            if isinstance(runtime.catalog, InMemoryCatalogStore):
                runtime.catalog.add_listing(listing)
        result = runtime.service.trigger(listing if listing is not None else target, force=force)
    finally:
        runtime.close()

    _echo_json(result.to_dict())
    if not result.status.produced_detail:
        sys.exit(1)


@cli.command()
@click.option(
    "--platform",
    type=click.Choice([platform.value for platform in Platform]),
    help="Only heal listings of this platform",
)
@click.option("--limit", type=int, help="Maximum listings to select")
@click.option("--concurrency", type=int, help="Parallel scrapes (default: governor ceiling)")
@click.option("--checkpoint", "checkpoint_path", type=click.Path(dir_okay=False), help="Progress file")
@click.option("--resume/--fresh", default=True, help="Continue from the checkpoint or start over")
@click.option("--keep-checkpoint", is_flag=True, help="Keep the progress file after a complete run")
@click.pass_obj
def heal(
    config: IngestConfig,
    platform: Optional[str],
    limit: Optional[int],
    concurrency: Optional[int],
    checkpoint_path: Optional[str],
    resume: bool,
    keep_checkpoint: bool,
) -> None:
    """Re-scrape listings whose detail is not correct."""
    runtime = build_runtime(config)
    try:
        orchestrator = HealingOrchestrator(runtime.service, runtime.catalog, config.healing)
        summary = orchestrator.run(
            platform=Platform(platform) if platform else None,
            limit=limit,
            concurrency=concurrency,
            resume=resume,
            checkpoint_path=checkpoint_path,
            keep_checkpoint=keep_checkpoint,
        )
    finally:
        runtime.close()

    click.echo(
        f"Selected {summary.selected}: {summary.succeeded} succeeded "
        f"({summary.correct} correct), {summary.failed} failed, {summary.skipped} skipped"
    )
    if summary.interrupted:
        click.echo(f"Interrupted with {summary.remaining} remaining; rerun to resume")
    if summary.failed:
        sys.exit(1)


@cli.command("audit-images")
@click.pass_obj
def audit_images(config: IngestConfig) -> None:
    """Re-check cached images and register newly detected bad hashes."""
    images = build_images(config)
    try:
        flagged = images.audit()
    finally:
        images.close()

    for asset in flagged:
        click.echo(f"{asset.content_hash}  {asset.reason}  {asset.source_url}")
    click.echo(f"Flagged {len(flagged)} image(s); registry holds {len(images.registry)} hash(es)")


@cli.command("mark-bad")
@click.argument("hashes", nargs=-1, required=True)
@click.option("--reason", default="manual", show_default=True, help="Why the image is bad")
@click.pass_obj
def mark_bad(config: IngestConfig, hashes: tuple, reason: str) -> None:
    """Add content hashes found by manual audit to the bad-hash registry."""
    images = build_images(config)
    added = 0
    try:
        for content_hash in hashes:
            if images.mark_bad(content_hash.strip().lower(), reason):
                added += 1
            else:
                click.echo(f"{content_hash} already registered")
    finally:
        images.close()
    click.echo(f"Added {added} hash(es); registry holds {len(images.registry)}")


if __name__ == "__main__":
    cli()
