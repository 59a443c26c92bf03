"""
Background synchronization of offline redemptions.

The agent periodically sends due intents to the server in one batch and
applies the per-item results to the local queue:

    synced   -> intent deleted
    conflict -> intent replaced by a Conflict record
    error    -> attempts + 1, retried after a jittered backoff

Cycles are single-flight. A cycle requested while another is running is
skipped, not queued.

Example:
    agent = SyncAgent(transport=HttpSyncTransport.from_settings())
    agent.init()                          # timer thread
    ...
    agent.notify_connectivity_restored()  # sync right away
    ...
    agent.shutdown()
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from django.conf import settings
from django.db import close_old_connections
from django.utils import timezone

from . import offline_queue
from .device import get_device_id, record_sync
from .exceptions import RemoteRejectionError, TransportError
from .transport import SyncTransport

logger = logging.getLogger(__name__)


@dataclass
class SyncCycleReport:
    skipped: bool = False
    offline: bool = False
    sent: int = 0
    synced: int = 0
    conflicts: int = 0
    errors: int = 0
    error: str = ''


class SyncAgent:
    """
    Owns the sync lifecycle of one terminal.

    Args:
        transport: How to reach the server
        device_id: Terminal id (defaults to the persisted TerminalDevice)
        interval: Seconds between timer-driven cycles
        batch_size: Maximum intents per batch
    """

    def __init__(
        self,
        *,
        transport: SyncTransport,
        device_id: Optional[str] = None,
        interval: Optional[float] = None,
        batch_size: Optional[int] = None
    ):
        self.transport = transport
        self.device_id = device_id or get_device_id()
        self.interval = interval if interval is not None else settings.TERMINAL_SYNC_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.SYNC_MAX_BATCH_SIZE

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread = None

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def init(self) -> None:
        """Start the timer thread. Runs a first cycle immediately."""
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"sync-agent-{self.device_id}",
            daemon=True,
        )
        self._thread.start()
        logger.info("Sync agent started for %s (every %ss)", self.device_id, self.interval)

    def shutdown(self, timeout: Optional[float] = None) -> None:
        if not self.is_running:
            return
        self._stop.set()
        self._wake.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Sync agent stopped for %s", self.device_id)

    def notify_connectivity_restored(self) -> Optional[SyncCycleReport]:
        """
        Trigger a cycle now.

        With the timer thread running the cycle happens there and None is
        returned; otherwise it runs in the caller's thread.
        """
        if self.is_running:
            self._wake.set()
            return None
        return self.sync_now()

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                close_old_connections()
                try:
                    self.sync_now()
                except Exception:
                    logger.exception("Sync cycle failed for %s", self.device_id)
                self._wake.wait(self.interval)
                self._wake.clear()
        finally:
            close_old_connections()

    # -------------------------------------------------------------------------
    # Sync cycle
    # -------------------------------------------------------------------------

    def sync_now(self) -> SyncCycleReport:
        if not self._lock.acquire(blocking=False):
            logger.info("Sync already in progress for %s, skipping", self.device_id)
            return SyncCycleReport(skipped=True)
        try:
            return self._cycle()
        finally:
            self._lock.release()

    def _cycle(self) -> SyncCycleReport:
        now = timezone.now()
        intents = list(offline_queue.get_due_intents(now=now, limit=self.batch_size))
        if not intents:
            return SyncCycleReport()

        if not self.transport.check_health():
            logger.info("Server unreachable, postponing %d redemption(s)", len(intents))
            return SyncCycleReport(offline=True)

        logger.info("Syncing %d pending redemption(s) from %s", len(intents), self.device_id)
        try:
            response = self.transport.sync_redemptions(
                device_id=self.device_id,
                intents=[intent.as_payload() for intent in intents],
            )
        except (TransportError, RemoteRejectionError) as exc:
            for intent in intents:
                offline_queue.record_failure(intent, error=str(exc), now=now)
            return SyncCycleReport(sent=len(intents), errors=len(intents), error=str(exc))

        report = self._apply(intents, response.get('results', []), now=now)
        record_sync(at=now)
        logger.info(
            "Sync completed for %s: %d synced, %d conflicts, %d errors",
            self.device_id, report.synced, report.conflicts, report.errors,
        )
        return report

    def _apply(self, intents, results, *, now) -> SyncCycleReport:
        report = SyncCycleReport(sent=len(intents))
        by_local_id = {intent.local_id: intent for intent in intents}

        for result in results:
            intent = by_local_id.pop(result.get('local_id'), None)
            if intent is None:
                logger.warning("Ignoring result for unknown local_id %s", result.get('local_id'))
                continue

            outcome = result.get('status')
            if outcome == 'synced':
                offline_queue.mark_synced(intent)
                report.synced += 1
            elif outcome == 'conflict':
                offline_queue.record_conflict(intent, result)
                report.conflicts += 1
            else:
                error = result.get('message') or result.get('reason') or 'unknown error'
                offline_queue.record_failure(intent, error=error, now=now)
                report.errors += 1

        for intent in by_local_id.values():
            offline_queue.record_failure(intent, error='missing from server response', now=now)
            report.errors += 1

        return report
