"""Detection of new feed entries against the stored marker."""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .models import FeedEntry, Marker

logger = logging.getLogger(__name__)

DEFAULT_RECENT_IDS = 500


@dataclass
class Detection:
    """New entries (oldest first) and the marker candidate for one fetch."""
    new_entries: List[FeedEntry] = field(default_factory=list)
    new_marker: Optional[Marker] = None
    seen_ids: List[str] = field(default_factory=list)  # ids to remember once the marker commits
    baseline: bool = False


class RecentIds:
    """Bounded, insertion-ordered set of entry ids for one feed."""

    def __init__(self, limit: int):
        self.limit = limit
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def snapshot(self) -> Set[str]:
        return set(self._ids)

    def add(self, entry_id: str) -> None:
        self._ids[entry_id] = None
        self._ids.move_to_end(entry_id)
        while len(self._ids) > self.limit:
            self._ids.popitem(last=False)


class ChangeDetector:
    """
    Decide which fetched entries are new for a feed.

    Timestamps are the primary signal. Entries without a usable timestamp,
    or feeds whose marker is an entry id, fall back to a per-feed cache of
    recently seen ids. detect() is pure; the cache only changes through
    remember().
    """

    def __init__(self, recent_ids_per_feed: int = DEFAULT_RECENT_IDS):
        self.recent_ids_per_feed = recent_ids_per_feed
        self._recent: Dict[int, RecentIds] = {}
        self._lock = threading.Lock()

    def _snapshot_ids(self, feed_id: int) -> Optional[Set[str]]:
        with self._lock:
            recent = self._recent.get(feed_id)
            if recent is None:
                return None
            return recent.snapshot()

    def remember(self, feed_id: int, entry_ids: Iterable[str]) -> None:
        """Record ids as delivered (or baselined) for feed_id."""
        with self._lock:
            recent = self._recent.setdefault(feed_id, RecentIds(self.recent_ids_per_feed))
            for entry_id in entry_ids:
                recent.add(entry_id)

    def forget(self, feed_id: int) -> None:
        with self._lock:
            self._recent.pop(feed_id, None)

    def detect(
        self,
        feed_id: int,
        marker: Optional[Marker],
        entries: Sequence[FeedEntry],
    ) -> Detection:
        """
        Compute the new entries and the candidate marker.

        Args:
            feed_id: Registry id, selects the recent-ids cache.
            marker: Stored marker, None if the feed was never polled.
            entries: Entries in document order.

        Returns:
            Detection with new entries ordered oldest first.
        """
        if not entries:
            return Detection(new_marker=marker)

        candidate = candidate_marker(marker, entries)

        if marker is None:
            # First poll: record the baseline without notifying
            return Detection(
                new_marker=candidate,
                seen_ids=[e.entry_id for e in entries],
                baseline=True,
            )

        known = self._snapshot_ids(feed_id)
        cold = known is None
        known = known or set()

        dated: List[FeedEntry] = []
        undated: List[FeedEntry] = []
        seen_ids: List[str] = []

        if marker.is_timestamp:
            for entry in entries:
                if entry.entry_id in known:
                    continue
                if entry.published_at is not None:
                    if entry.published_at > marker.published_at:
                        dated.append(entry)
                    else:
                        seen_ids.append(entry.entry_id)
                elif cold:
                    # Nothing to compare against after a restart
                    seen_ids.append(entry.entry_id)
                else:
                    undated.append(entry)
        else:
            undated, seen_ids = _split_by_id_marker(marker.entry_id, entries, known, cold)

        dated.sort(key=lambda e: e.published_at)
        new_entries = dated + list(reversed(undated))

        if new_entries:
            logger.debug(f"Feed {feed_id}: {len(new_entries)} new of {len(entries)} entries")
        return Detection(new_entries=new_entries, new_marker=candidate, seen_ids=seen_ids)


def _split_by_id_marker(
    marker_id: str,
    entries: Sequence[FeedEntry],
    known: Set[str],
    cold: bool,
):
    """Split entries for a feed tracked by entry id rather than by date."""
    new: List[FeedEntry] = []
    seen: List[str] = []
    if not cold:
        for entry in entries:
            if entry.entry_id in known or entry.entry_id == marker_id:
                seen.append(entry.entry_id)
            else:
                new.append(entry)
        return new, seen

    # Cold cache: entries ahead of the marker in document order are new
    ids = [e.entry_id for e in entries]
    if marker_id not in ids:
        return [], ids
    position = ids.index(marker_id)
    return list(entries[:position]), ids[position:]


def _newest_timestamp(entries: Iterable[FeedEntry]) -> Optional[datetime]:
    stamps = [e.published_at for e in entries if e.published_at is not None]
    return max(stamps) if stamps else None


def candidate_marker(marker: Optional[Marker], entries: Sequence[FeedEntry]) -> Optional[Marker]:
    """
    Marker covering every fetched entry, never older than marker.

    The newest timestamp among all entries wins; feeds without any dates
    use the first entry id in document order.
    """
    newest = _newest_timestamp(entries)
    if newest is not None:
        if marker is not None and marker.is_timestamp and marker.published_at >= newest:
            return marker
        return Marker.at(newest)
    if marker is not None and marker.is_timestamp:
        return marker
    if entries:
        return Marker.for_id(entries[0].entry_id)
    return marker


def settle_marker(
    marker: Optional[Marker],
    detection: Detection,
    delivered_ids: Iterable[str],
    failed_ids: Iterable[str],
) -> Optional[Marker]:
    """
    Marker to commit after notifying the entries of detection.

    Without failures this is detection.new_marker. Otherwise the marker
    stops just before the oldest failed entry so it is retried next tick:
    only delivered entries older than it count, and an id marker does not
    move at all.
    """
    failed = set(failed_ids)
    if not failed:
        return detection.new_marker

    if marker is None or not marker.is_timestamp:
        return marker

    failed_stamps = [
        e.published_at for e in detection.new_entries
        if e.entry_id in failed and e.published_at is not None
    ]
    if not failed_stamps:
        # Only undated entries failed; the cache keeps them pending
        return detection.new_marker

    ceiling = min(failed_stamps)
    delivered = set(delivered_ids)
    settled = marker
    for entry in detection.new_entries:
        if entry.entry_id not in delivered or entry.published_at is None:
            continue
        if entry.published_at < ceiling and entry.published_at > settled.published_at:
            settled = Marker.at(entry.published_at)
    return settled
