"""Batch re-scrape of catalog listings whose detail is not correct."""
from __future__ import annotations

import logging
import signal
import threading
import time
from collections import Counter, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

from .. import contract
from ..antibot.retry import BackoffPolicy, BlockCooldown
from ..catalog import CatalogStore
from ..config import HealingConfig
from ..errors import ScrapeStatus
from ..models import Platform, QualityClass
from ..service import ScrapeResult, ScrapeService
from .checkpoint import Checkpoint
from .tasks import ScrapeTask, TaskState

LOGGER = logging.getLogger(__name__)

QUALITY_PRIORITY = {
    QualityClass.MISSING: 0,
    QualityClass.BAD: 1,
    QualityClass.PARTIAL: 2,
    QualityClass.GOOD: 3,
}

POLL_INTERVAL = 1.0


@dataclass
class HealingSummary:
    """Counts for one healing run."""

    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    correct: int = 0
    remaining: int = 0
    interrupted: bool = False
    elapsed: float = 0.0
    by_quality: Counter = field(default_factory=Counter)
    terminal: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected": self.selected,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "correct": self.correct,
            "remaining": self.remaining,
            "interrupted": self.interrupted,
            "elapsed": round(self.elapsed, 2),
            "by_quality": dict(self.by_quality),
            "terminal": list(self.terminal),
        }


def select_targets(
    catalog: CatalogStore,
    platform: Optional[Platform] = None,
    limit: Optional[int] = None,
) -> List[ScrapeTask]:
    """Listings whose stored detail fails the correctness predicate.

    Ordered missing, bad, partial, then good-but-incorrect; identity breaks ties.
    """
    ranked = []
    for listing in catalog.iter_listings(platform):
        detail = catalog.get_detail(listing.id)
        if contract.is_correct(detail):
            continue
        quality = contract.classify_quality(detail)
        ranked.append((QUALITY_PRIORITY[quality], listing.identity, listing, quality))

    ranked.sort(key=lambda item: (item[0], item[1]))
    if limit is not None:
        ranked = ranked[:limit]
    return [ScrapeTask(listing=listing, quality_before=quality) for _, _, listing, quality in ranked]


class HealingOrchestrator:
    """Re-scrape incorrect listings with bounded parallelism and backoff."""

    def __init__(
        self,
        service: ScrapeService,
        catalog: Optional[CatalogStore] = None,
        config: Optional[HealingConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        install_signal_handlers: bool = True,
    ) -> None:
        """Initialize orchestrator.

        Parameters
        ----------
        service : ScrapeService
            Scrape trigger used for every attempt
        catalog : CatalogStore, optional
            Listing source (defaults to the service's catalog)
        config : HealingConfig, optional
            Retry, cooldown and checkpoint settings
        clock : callable
            Monotonic clock for backoff scheduling
        sleep : callable
            Used for inter-batch delays and idle waits (tests pass a fake)
        install_signal_handlers : bool
            Stop gracefully on SIGINT/SIGTERM
        """
        self.service = service
        self.catalog = catalog or service.catalog
        self.config = config or HealingConfig()
        self.clock = clock
        self.sleep = sleep
        self.install_signal_handlers = install_signal_handlers
        self.policy = BackoffPolicy(
            max_attempts=self.config.max_attempts,
            backoff_base=self.config.backoff_base,
            max_backoff=self.config.backoff_max,
        )
        self.cooldown = BlockCooldown(
            max_consecutive=self.config.max_consecutive_blocks,
            cooldown=self.config.block_cooldown,
            clock=clock,
        )
        self._stopping = threading.Event()

    def select_targets(self, platform: Optional[Platform] = None, limit: Optional[int] = None) -> List[ScrapeTask]:
        return select_targets(self.catalog, platform, limit)

    def stop(self) -> None:
        """Stop submitting new work; running attempts still finish."""
        if not self._stopping.is_set():
            LOGGER.info("Stop requested, finishing in-flight tasks")
        self._stopping.set()

    def _handle_shutdown(self, signum, frame) -> None:
        LOGGER.info("Received signal %s, stopping gracefully...", signum)
        self.stop()

    def run(
        self,
        platform: Optional[Platform] = None,
        limit: Optional[int] = None,
        concurrency: Optional[int] = None,
        resume: bool = True,
        checkpoint_path: Optional[Path | str] = None,
        keep_checkpoint: bool = False,
    ) -> HealingSummary:
        """Heal up to ``limit`` listings.

        Parameters
        ----------
        platform : Platform, optional
            Restrict to one platform
        limit : int, optional
            Maximum number of listings selected
        concurrency : int, optional
            Parallel attempts (defaults to the governor ceiling)
        resume : bool
            Continue from an existing checkpoint instead of starting fresh
        checkpoint_path : Path, optional
            Overrides ``HealingConfig.checkpoint_path``
        keep_checkpoint : bool
            Keep the checkpoint file after a complete run

        Returns
        -------
        HealingSummary
            Outcome counts and terminal failures
        """
        started = self.clock()
        concurrency = max(1, concurrency or self.service.config.max_concurrent)
        path = checkpoint_path if checkpoint_path is not None else self.config.checkpoint_path
        if not resume:
            Checkpoint(path).clear()
        checkpoint = Checkpoint.load(path)

        summary = HealingSummary()
        pending: Deque[ScrapeTask] = deque()
        for task in self.select_targets(platform, limit):
            summary.selected += 1
            if checkpoint.is_processed(task.identity):
                summary.skipped += 1
                continue
            task.attempts = checkpoint.attempts.get(task.identity, 0)
            pending.append(task)

        LOGGER.info(
            "Healing %d listing(s) (%d skipped from checkpoint, concurrency=%d, platform=%s)",
            len(pending),
            summary.skipped,
            concurrency,
            platform.value if platform else "all",
        )

        self._stopping.clear()
        previous = self._install_handlers()
        waiting: List[ScrapeTask] = []
        running: Dict[Future, ScrapeTask] = {}
        try:
            with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="heal") as pool:
                while pending or waiting or running:
                    if self._stopping.is_set() and not running:
                        break
                    self._promote_due(waiting, pending)
                    self._submit(pool, pending, running, concurrency)
                    if running:
                        done, _ = wait(list(running), timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                        for future in done:
                            task = running.pop(future)
                            self._finish(task, self._result_of(task, future), waiting, checkpoint, summary)
                    elif not self._stopping.is_set():
                        self._idle(waiting, pending)
        finally:
            self._restore_handlers(previous)

        summary.remaining = len(pending) + len(waiting)
        summary.interrupted = self._stopping.is_set() and summary.remaining > 0
        summary.elapsed = self.clock() - started
        if summary.remaining == 0 and not keep_checkpoint:
            checkpoint.clear()
        self._log_summary(summary)
        return summary

    def _promote_due(self, waiting: List[ScrapeTask], pending: Deque[ScrapeTask]) -> None:
        now = self.clock()
        for task in [task for task in waiting if task.next_attempt_at <= now]:
            waiting.remove(task)
            pending.append(task)

    def _submit(
        self,
        pool: ThreadPoolExecutor,
        pending: Deque[ScrapeTask],
        running: Dict[Future, ScrapeTask],
        concurrency: int,
    ) -> None:
        while pending and len(running) < concurrency and not self._stopping.is_set():
            if self.cooldown.remaining() > 0:
                return
            task = pending.popleft()
            task.start()
            LOGGER.debug("Submitting %s (attempt %d)", task.listing.id, task.attempts)
            running[pool.submit(self.service.trigger, task.listing, True)] = task
            if pending and self.config.inter_batch_delay > 0:
                self.sleep(self.config.inter_batch_delay)

    def _idle(self, waiting: List[ScrapeTask], pending: Deque[ScrapeTask]) -> None:
        """Nothing running: sleep until a retry is due or the cooldown ends."""
        delays = []
        cooldown = self.cooldown.remaining()
        if cooldown > 0 and pending:
            delays.append(cooldown)
        if waiting:
            delays.append(min(task.next_attempt_at for task in waiting) - self.clock())
        delay = max(0.0, min(delays)) if delays else 0.0
        if delay > 0:
            LOGGER.debug("Idle for %.1fs", delay)
            self.sleep(delay)

    @staticmethod
    def _result_of(task: ScrapeTask, future: Future) -> ScrapeResult:
        try:
            return future.result()
        except Exception as exc:
            LOGGER.error("Scrape of %s raised: %s", task.listing.id, exc, exc_info=True)
            return ScrapeResult(ScrapeStatus.NETWORK_ERROR, task.listing.id, error=str(exc))

    def _finish(
        self,
        task: ScrapeTask,
        result: ScrapeResult,
        waiting: List[ScrapeTask],
        checkpoint: Checkpoint,
        summary: HealingSummary,
    ) -> None:
        # Empty extractions still wrote a fallback detail; its quality keeps it selectable next run
        if result.status.produced_detail and result.error is None:
            task.succeed(result.quality, result.status)
            self.cooldown.record_success()
            summary.succeeded += 1
            summary.correct += int(result.correct)
            summary.by_quality[result.quality.value] += 1
            checkpoint.record(task.identity, "succeeded", quality=result.quality.value)
            LOGGER.info(
                "Healed %s: %s -> %s (status=%s correct=%s)",
                task.listing.id,
                task.quality_before.value,
                result.quality.value,
                result.status.value,
                result.correct,
            )
        else:
            status = result.status
            if status.produced_detail:
                # Scraped but the catalog write failed
                status = ScrapeStatus.NETWORK_ERROR
            if status is ScrapeStatus.BLOCKED:
                self.cooldown.record_block()
            state = task.fail(status, result.error, self.policy, self.clock())
            if state is TaskState.FAILED_RETRYABLE:
                waiting.append(task)
                checkpoint.record_attempt(task.identity, task.attempts)
                LOGGER.warning(
                    "Retrying %s in %.0fs (attempt %d/%d): %s",
                    task.listing.id,
                    task.next_attempt_at - self.clock(),
                    task.attempts,
                    self.policy.max_attempts,
                    status.value,
                )
            else:
                record = task.to_dict()
                summary.failed += 1
                summary.by_quality[result.quality.value] += 1
                summary.terminal.append(record)
                checkpoint.record(task.identity, "failed", quality=result.quality.value, terminal=record)
                LOGGER.error(
                    "Giving up on %s after %d attempt(s): %s %s",
                    task.listing.id,
                    task.attempts,
                    status.value,
                    result.error or "",
                )

        finished = summary.succeeded + summary.failed
        if finished and self.config.progress_every and finished % self.config.progress_every == 0:
            LOGGER.info(
                "Progress: %d finished (%d succeeded, %d failed, %d waiting for retry)",
                finished,
                summary.succeeded,
                summary.failed,
                len(waiting),
            )

    def _install_handlers(self) -> Optional[Dict[int, Any]]:
        if not self.install_signal_handlers or threading.current_thread() is not threading.main_thread():
            return None
        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, self._handle_shutdown)
        return previous

    @staticmethod
    def _restore_handlers(previous: Optional[Dict[int, Any]]) -> None:
        for signum, handler in (previous or {}).items():
            signal.signal(signum, handler)

    @staticmethod
    def _log_summary(summary: HealingSummary) -> None:
        LOGGER.info(
            "Healing finished in %.1fs: selected=%d succeeded=%d correct=%d failed=%d skipped=%d remaining=%d%s",
            summary.elapsed,
            summary.selected,
            summary.succeeded,
            summary.correct,
            summary.failed,
            summary.skipped,
            summary.remaining,
            " (interrupted)" if summary.interrupted else "",
        )
        for quality, count in sorted(summary.by_quality.items()):
            LOGGER.info("  %-8s %d", quality, count)
        for record in summary.terminal:
            LOGGER.error("  terminal: %s %s (%s)", record["listing_id"], record["last_status"], record["last_error"])
