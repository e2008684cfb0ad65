"""Fixed-interval polling of all registered feeds."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Set

from .config import AppConfig
from .detector import ChangeDetector, settle_marker
from .errors import AuthError, MissingProfile, PersistenceError, RecipientRejected
from .fetcher import FetchResult, fetch_feed
from .models import FeedEntry, FeedSubscription, PollOutcome, SmtpProfile, TickSnapshot
from .notifier import NotifyResult, send_digest, send_entry
from .registry import FeedRegistry, SettingsStore

logger = logging.getLogger(__name__)

FetchFn = Callable[[str], FetchResult]
SendFn = Callable[[SmtpProfile, FeedSubscription, FeedEntry], NotifyResult]
SendManyFn = Callable[[SmtpProfile, FeedSubscription, Sequence[FeedEntry]], NotifyResult]


class PollScheduler:
    """
    Poll every feed on a fixed interval with a bounded worker pool.

    Each feed runs fetch -> detect -> notify -> commit sequentially inside
    one worker. A feed is never polled twice at the same time; ticks may
    otherwise overlap.
    """

    def __init__(
        self,
        registry: FeedRegistry,
        settings: SettingsStore,
        config: AppConfig,
        fetch: Optional[FetchFn] = None,
        send: Optional[SendFn] = None,
        send_many: Optional[SendManyFn] = None,
        detector: Optional[ChangeDetector] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.settings = settings
        self.config = config
        self.fetch = fetch or self._default_fetch
        self.send = send or self._default_send
        self.send_many = send_many or self._default_send_many
        self.detector = detector or ChangeDetector(config.scheduler.recent_ids_per_feed)
        self.sleep = sleep

        self._executor = ThreadPoolExecutor(
            max_workers=config.scheduler.max_workers,
            thread_name_prefix="poll",
        )
        self._in_flight: Set[int] = set()
        self._in_flight_lock = threading.Lock()
        self._stop = threading.Event()

    # Default collaborators

    def _default_fetch(self, url: str) -> FetchResult:
        return fetch_feed(
            url,
            timeout=self.config.fetch.timeout_seconds,
            max_bytes=self.config.fetch.max_bytes,
        )

    def _default_send(self, profile, feed, entry) -> NotifyResult:
        return send_entry(profile, feed, entry, timeout=self.config.notification.smtp_timeout_sec)

    def _default_send_many(self, profile, feed, entries) -> NotifyResult:
        return send_digest(profile, feed, entries, timeout=self.config.notification.smtp_timeout_sec)

    # Tick

    def snapshot(self) -> TickSnapshot:
        """Read the feed list and SMTP profile once for a tick."""
        feeds = self.registry.list_feeds()
        profile = self.settings.get_active_smtp_profile()
        return TickSnapshot(feeds=feeds, profile=profile, started_at=datetime.now(timezone.utc))

    def tick(self, wait: bool = True) -> List[PollOutcome]:
        """
        Run one polling cycle over all feeds.

        Args:
            wait: Block until every submitted feed finishes.

        Returns:
            Outcomes of the feeds polled by this tick (empty when wait is False),
            plus a "skipped" outcome for feeds still busy from an earlier tick.
        """
        try:
            snapshot = self.snapshot()
        except PersistenceError as e:
            logger.error(f"Could not read registry, skipping tick: {e}")
            return []

        if snapshot.profile is None:
            logger.warning("No SMTP profile configured; new entries will not be sent this tick")

        logger.info(f"Tick started for {len(snapshot.feeds)} feed(s)")
        skipped: List[PollOutcome] = []
        futures: List[Future] = []
        for feed in snapshot.feeds:
            if not self._claim(feed.id):
                logger.info(f"Feed {feed.id} ({feed.name}) still in flight from a previous tick")
                skipped.append(PollOutcome(feed.id, feed.name, status="skipped"))
                continue
            futures.append(self._executor.submit(self._run_claimed, snapshot, feed))

        if not wait:
            return skipped
        return skipped + [future.result() for future in futures]

    def _claim(self, feed_id: int) -> bool:
        with self._in_flight_lock:
            if feed_id in self._in_flight:
                return False
            self._in_flight.add(feed_id)
            return True

    def _release(self, feed_id: int) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(feed_id)

    def in_flight(self) -> Set[int]:
        with self._in_flight_lock:
            return set(self._in_flight)

    def _run_claimed(self, snapshot: TickSnapshot, feed: FeedSubscription) -> PollOutcome:
        try:
            outcome = self.poll_feed(snapshot, feed)
        except Exception as e:
            logger.error(f"Unexpected error polling feed {feed.id} ({feed.name}): {e}", exc_info=True)
            outcome = PollOutcome(feed.id, feed.name, status="failed", error=str(e))
        finally:
            self._release(feed.id)
        _log_outcome(outcome)
        return outcome

    # Per-feed pipeline

    def poll_feed(self, snapshot: TickSnapshot, feed: FeedSubscription) -> PollOutcome:
        """Fetch, detect, notify and commit one feed."""
        outcome = PollOutcome(feed.id, feed.name)

        # The snapshot row can predate a commit made by an earlier tick
        try:
            current = self.registry.get_feed(feed.id)
        except PersistenceError as e:
            logger.error(f"Could not re-read feed {feed.id}: {e}")
            outcome.status = "failed"
            outcome.error = str(e)
            return outcome
        if current is None:
            outcome.status = "failed"
            outcome.error = "feed not found"
            return outcome
        feed = current

        # Fetching
        result = self._fetch_with_retry(feed)
        if not result.ok:
            outcome.status = "failed"
            outcome.error = f"{type(result.error).__name__}: {result.error}"
            return outcome

        # Detecting
        detection = self.detector.detect(feed.id, feed.marker, result.entries)
        outcome.new_entries = len(detection.new_entries)

        if snapshot.profile is None:
            outcome.status = "no_profile"
            outcome.error = str(MissingProfile("No SMTP profile configured"))
            return outcome

        if detection.baseline:
            outcome.status = "baseline"
            self._commit(feed, detection.new_marker, detection.seen_ids, outcome)
            return outcome

        # Notifying
        if self.config.notification.mode == "digest":
            delivered, failed = self._notify_digest(snapshot.profile, feed, detection.new_entries)
        else:
            delivered, failed = self._notify_entries(snapshot.profile, feed, detection.new_entries)
        outcome.sent = len(delivered)

        # Committing
        marker = settle_marker(feed.marker, detection, delivered, failed)
        seen = list(detection.seen_ids) + delivered
        if failed:
            outcome.status = "failed"
            outcome.error = f"{len(failed)} notification(s) failed"
        self._commit(feed, marker, seen, outcome)
        return outcome

    def _fetch_with_retry(self, feed: FeedSubscription) -> FetchResult:
        attempts = self.config.scheduler.retry_attempts
        result = self.fetch(feed.url)
        attempt = 1
        while not result.ok and result.error.retryable and attempt < attempts:
            delay = self._backoff(attempt)
            logger.warning(
                f"Fetch attempt {attempt} for feed {feed.id} failed: {result.error}. "
                f"Retrying in {delay}s..."
            )
            self.sleep(delay)
            result = self.fetch(feed.url)
            attempt += 1
        if not result.ok:
            logger.error(f"Error fetching feed {feed.id} ({feed.url}): {result.error}")
        return result

    def _send_with_retry(self, label: str, send: Callable[[], NotifyResult]) -> NotifyResult:
        attempts = self.config.scheduler.retry_attempts
        result = _guarded_send(label, send)
        attempt = 1
        while not result.sent and result.retryable and attempt < attempts:
            delay = self._backoff(attempt)
            logger.warning(
                f"Send attempt {attempt} for {label} failed: {result.describe()}. Retrying in {delay}s..."
            )
            self.sleep(delay)
            result = _guarded_send(label, send)
            attempt += 1
        return result

    def _backoff(self, attempt: int) -> float:
        return self.config.scheduler.retry_backoff_sec * (2 ** (attempt - 1))

    def _notify_entries(self, profile: SmtpProfile, feed: FeedSubscription, entries: Sequence[FeedEntry]):
        """Send entries oldest first; return (delivered_ids, failed_ids)."""
        delivered: List[str] = []
        failed: List[str] = []
        for index, entry in enumerate(entries):
            result = self._send_with_retry(
                f"feed {feed.id} entry {entry.entry_id!r}",
                lambda entry=entry: self.send(profile, feed, entry),
            )
            if result.sent:
                delivered.append(entry.entry_id)
                continue

            failed.append(entry.entry_id)
            logger.error(f"Giving up on entry {entry.entry_id!r} of feed {feed.id} this tick: {result.describe()}")
            if isinstance(result.error, AuthError) or result.config_error is not None:
                # Every later send would fail the same way
                failed.extend(e.entry_id for e in entries[index + 1:])
                break
        return delivered, failed

    def _notify_digest(self, profile: SmtpProfile, feed: FeedSubscription, entries: Sequence[FeedEntry]):
        if not entries:
            return [], []
        ids = [e.entry_id for e in entries]
        result = self._send_with_retry(
            f"digest of feed {feed.id}",
            lambda: self.send_many(profile, feed, entries),
        )
        if result.sent:
            return ids, []
        logger.error(f"Giving up on digest of feed {feed.id} this tick: {result.describe()}")
        return [], ids

    def _commit(
        self,
        feed: FeedSubscription,
        marker,
        seen_ids: Sequence[str],
        outcome: PollOutcome,
    ) -> None:
        # Delivered ids are remembered even if the write fails so they are not sent twice
        self.detector.remember(feed.id, seen_ids)
        if marker is None or marker == feed.marker:
            return
        try:
            found = self.registry.update_marker(feed.id, marker)
        except PersistenceError as e:
            logger.error(f"Failed to set marker for feed {feed.id}: {e}")
            outcome.status = "failed"
            outcome.error = str(e)
            return
        if not found:
            logger.warning(f"Feed {feed.id} was removed while polling; marker not stored")
            outcome.status = "failed"
            outcome.error = "feed not found"
            return
        logger.debug(f"Feed {feed.id} marker {feed.marker} -> {marker}")

    # Loop

    def poll_now(self, feed_id: int) -> Optional[PollOutcome]:
        """Poll one feed immediately, outside the regular ticks."""
        feed = self.registry.get_feed(feed_id)
        if feed is None:
            return None
        if not self._claim(feed.id):
            return PollOutcome(feed.id, feed.name, status="skipped")
        snapshot = TickSnapshot(feeds=[feed], profile=self.settings.get_active_smtp_profile())
        return self._run_claimed(snapshot, feed)

    def run_forever(self) -> None:
        """
        Start a tick every polling interval until stop() is called.

        Ticks are started on a wall-clock schedule and do not wait for the
        previous one; feeds still in flight are skipped by the new tick.
        """
        interval = self.config.scheduler.polling_time_sec
        logger.info(f"Polling every {interval}s with {self.config.scheduler.max_workers} worker(s)")
        next_tick = time.monotonic()
        while not self._stop.is_set():
            busy = self.in_flight()
            if busy:
                logger.info(f"{len(busy)} feed(s) from the previous tick are still running")
            try:
                self.tick(wait=False)
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}", exc_info=True)
            next_tick += interval
            self._stop.wait(max(0.0, next_tick - time.monotonic()))

    def request_stop(self) -> None:
        """Make run_forever return after the current wait."""
        self._stop.set()

    def stop(self, wait: bool = True) -> None:
        """Stop the loop; running feeds finish and commit."""
        self._stop.set()
        self._executor.shutdown(wait=wait)
        logger.info("Scheduler stopped")


def _guarded_send(label: str, send: Callable[[], NotifyResult]) -> NotifyResult:
    """Run send, turning an unexpected exception into a non-retryable failure."""
    try:
        return send()
    except Exception as e:
        logger.error(f"Unexpected error sending {label}: {e}", exc_info=True)
        return NotifyResult(sent=False, error=RecipientRejected(f"Unexpected error: {e}"))


def _log_outcome(outcome: PollOutcome) -> None:
    message = (
        f"Feed {outcome.feed_id} ({outcome.feed_name}): {outcome.status}, "
        f"{outcome.new_entries} new, {outcome.sent} sent"
    )
    if outcome.error:
        message += f" ({outcome.error})"
    if outcome.status == "failed":
        logger.warning(message)
    else:
        logger.info(message)
