# ttl.py
import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from .utils import utcnow

logger = logging.getLogger(__name__)


class TTLMonitor:
    """Periodic background sweep that removes documents past their TTL.

    Runs on a daemon thread, independent of queries. Deletions are eventually
    consistent with the expiry time: a document may outlive its deadline by up
    to one interval. A failing collection is logged and retried next sweep.
    """

    def __init__(self, database, interval: Optional[float] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.database = database
        self.interval = interval if interval is not None else database.settings.ttl_monitor_interval
        self.clock = clock or utcnow
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        total = 0
        for name, coll in list(self.database.collections.items()):
            try:
                removed = coll.expire_documents(now)
            except Exception:
                logger.exception("TTL sweep failed for collection %s; will retry", name)
                continue
            if removed:
                logger.info("TTL monitor removed %d expired documents from %s", removed, name)
            total += removed
        self.sweeps += 1
        return total

    def _run(self):
        while not self._stop.wait(self.interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("TTL sweep aborted; will retry")

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="pylitedoc-ttl", daemon=True)
        self._thread.start()
        logger.info("TTL monitor started (interval=%ss)", self.interval)

    def stop(self, timeout: Optional[float] = None):
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("TTL monitor stopped")
