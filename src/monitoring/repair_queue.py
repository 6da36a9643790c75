"""Background repair of corrupted rule parameters.

The decoder never writes to storage itself. When it heals a corrupted value it
emits a RepairRequest here; a daemon worker persists the healed parameters out
of band so the evaluation that found the corruption is never blocked by it.
"""

import queue
import threading
import time
from dataclasses import dataclass

from src.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class RepairRequest:
    config_id: str
    event_type: str
    parameters: dict


class ConfigRepairQueue:
    """Queue of pending parameter repairs, drained by a daemon thread.

    ``store`` must provide ``repair_config_parameters(config_id, params)``.
    With ``start=False`` nothing is persisted until ``process_pending()`` is
    called, which lets tests assert what was scheduled.
    """

    def __init__(self, store, maxsize: int = 1000, start: bool = True):
        self.store = store
        self._queue: queue.Queue[RepairRequest] = queue.Queue(maxsize=maxsize)
        self._pending_ids: set[str] = set()
        self._lock = threading.Lock()
        self._shutdown = threading.Event()
        self._worker: threading.Thread | None = None
        self.completed = 0
        self.failed = 0
        if start:
            self.start()

    def start(self):
        if self._worker is not None and self._worker.is_alive():
            return
        self._shutdown.clear()
        self._worker = threading.Thread(
            target=self._run, name="ConfigRepairWorker", daemon=True
        )
        self._worker.start()

    def stop(self, timeout: float = 5.0):
        self._shutdown.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None

    def submit(self, request: RepairRequest) -> bool:
        """Schedule a repair. Returns False if one for this config is already pending."""
        with self._lock:
            if request.config_id in self._pending_ids:
                return False
            self._pending_ids.add(request.config_id)
        try:
            self._queue.put_nowait(request)
        except queue.Full:
            with self._lock:
                self._pending_ids.discard(request.config_id)
            logger.warning("Repair queue full; dropping repair for config %s.", request.config_id)
            return False
        logger.info("Scheduled parameter repair for config %s.", request.config_id)
        return True

    @property
    def pending(self) -> list[RepairRequest]:
        """Snapshot of requests not yet processed."""
        with self._queue.mutex:
            return list(self._queue.queue)

    def process_pending(self) -> int:
        """Process everything currently queued on the calling thread."""
        processed = 0
        while True:
            try:
                request = self._queue.get_nowait()
            except queue.Empty:
                return processed
            self._apply(request)
            processed += 1

    def drain(self, timeout: float | None = None):
        """Block until every submitted repair has been processed."""
        if self._worker is None:
            self.process_pending()
            return
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return
                self._queue.all_tasks_done.wait(remaining)

    def _run(self):
        while not self._shutdown.is_set():
            try:
                request = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            self._apply(request)

    def _apply(self, request: RepairRequest):
        try:
            self.store.repair_config_parameters(request.config_id, request.parameters)
            self.completed += 1
            logger.info("Repaired corrupted parameters for config %s.", request.config_id)
        except Exception as e:
            self.failed += 1
            logger.error("Failed to repair parameters for config %s: %s", request.config_id, e)
        finally:
            with self._lock:
                self._pending_ids.discard(request.config_id)
            self._queue.task_done()
