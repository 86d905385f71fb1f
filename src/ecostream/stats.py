"""Per-device message counters."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime

log = logging.getLogger(__name__)

_SNAPSHOT_EVERY = 350  # broker messages per device between snapshot logs


@dataclass
class DeviceStats:
    """Counters for a single device.  Mutate only while holding ``lock``."""

    broker: int = 0
    http: int = 0
    topics: dict[str, int] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class StatsTracker:
    """Registry of :class:`DeviceStats` keyed by serial number.

    Entries are created lazily on the first message for a device.  Each
    entry has its own lock, so recording for one device never waits on
    another.  The registry-wide lock is held only to insert a missing
    entry.

    Safe to share between the asyncio loop and worker threads.
    """

    def __init__(self, *, snapshot_every: int = _SNAPSHOT_EVERY) -> None:
        self._entries: dict[str, DeviceStats] = {}
        self._insert_lock = threading.Lock()
        self._snapshot_every = snapshot_every

    def entry(self, serial: str) -> DeviceStats:
        """Return the stats entry for *serial*, creating it if needed."""
        stats = self._entries.get(serial)
        if stats is not None:
            return stats
        with self._insert_lock:
            return self._entries.setdefault(serial, DeviceStats())

    def record_broker_message(self, serial: str, topic: str | None = None) -> int:
        """Count one broker message for *serial* and return the new total."""
        stats = self.entry(serial)
        with stats.lock:
            stats.broker += 1
            if topic is not None:
                stats.topics[topic] = stats.topics.get(topic, 0) + 1
            count = stats.broker
        if self._snapshot_every and count % self._snapshot_every == 0:
            self._log_snapshot(count)
        return count

    def record_http_message(self, serial: str) -> int:
        """Count one HTTP response for *serial* and return the new total."""
        stats = self.entry(serial)
        with stats.lock:
            stats.http += 1
            return stats.http

    def counts(self, serial: str) -> tuple[int, int]:
        """Return ``(http, broker)`` counts for *serial* (zeros if unseen)."""
        stats = self._entries.get(serial)
        if stats is None:
            return 0, 0
        with stats.lock:
            return stats.http, stats.broker

    def topic_counts(self) -> dict[str, int]:
        """Snapshot of per-topic broker message counts."""
        result: dict[str, int] = {}
        for stats in list(self._entries.values()):
            with stats.lock:
                result.update(stats.topics)
        return result

    def report(self) -> str:
        """Human-readable summary, one line per device.

        Rows are read one at a time, so the report is not a consistent
        snapshot across devices.
        """
        lines = []
        for serial, stats in list(self._entries.items()):
            with stats.lock:
                http, broker = stats.http, stats.broker
            lines.append(f"  {serial} got http={http:03d} mqtt={broker:03d} messages\n")
        return "".join(lines)

    def _log_snapshot(self, count: int) -> None:
        log.info("Received MQTT msgs: %04d", count)
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        for topic, seen in sorted(self.topic_counts().items()):
            log.info("Received message of device %s = %d at %s", topic, seen, now)
