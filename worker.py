import logging
import threading
from typing import Callable, Optional

from errors import OperationCancelled, OperationInProgress

log = logging.getLogger(__name__)

JobTarget = Callable[[threading.Event, int], None]


class ProgressGate:
    """Forwards progress only when it moves forward and the job is still live."""

    def __init__(self, callback: Optional[Callable[..., None]], cancel: threading.Event) -> None:
        self._callback = callback
        self._cancel = cancel
        self._lock = threading.Lock()
        self._last = -1

    @property
    def last(self) -> int:
        return max(self._last, 0)

    def report(self, percentage: int, *details) -> bool:
        if self._callback is None or self._cancel.is_set():
            return False
        pct = min(max(int(percentage), 0), 100)
        with self._lock:
            if pct < self._last:
                pct = self._last
            self._last = pct
        self._callback(pct, *details)
        return True


class BackgroundJob:
    """One dedicated daemon thread per run.

    Every start bumps a job id. A run that has been stopped, or detached after
    a stop timed out, no longer matches the current id and must discard its
    result; ``claim`` is the single point where a run may publish it.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._cancel = threading.Event()
        self._job_id = 0
        self._claimed = False

    def start(self, target: JobTarget) -> int:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                raise OperationInProgress(f"{self.name} is already running")
            self._job_id += 1
            job_id = self._job_id
            self._cancel = threading.Event()
            self._claimed = False
            thread = threading.Thread(
                target=self._run,
                args=(target, self._cancel, job_id),
                name=f"{self.name}-{job_id}",
                daemon=True,
            )
            self._thread = thread
        thread.start()
        return job_id

    def _run(self, target: JobTarget, cancel: threading.Event, job_id: int) -> None:
        try:
            target(cancel, job_id)
        except OperationCancelled:
            log.info("%s run %d cancelled", self.name, job_id)
        except Exception:
            log.exception("%s run %d crashed", self.name, job_id)
        finally:
            with self._lock:
                if self._job_id == job_id:
                    self._thread = None

    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def is_current(self, job_id: int) -> bool:
        with self._lock:
            return job_id == self._job_id and not self._cancel.is_set()

    def claim(self, job_id: int) -> bool:
        """Return True once for a live run that may publish its result."""
        with self._lock:
            if job_id != self._job_id or self._cancel.is_set() or self._claimed:
                return False
            self._claimed = True
            return True

    def stop(self, timeout: float = 3.0) -> bool:
        """Cancel the current run and wait up to ``timeout`` seconds.

        Returns False when the worker had to be detached.
        """
        with self._lock:
            thread = self._thread
            self._cancel.set()
        if thread is None:
            return True
        if thread is not threading.current_thread():
            thread.join(timeout)
        if not thread.is_alive():
            return True
        with self._lock:
            if self._thread is thread:
                self._job_id += 1
                self._thread = None
        log.warning("%s did not stop within %.1fs; detaching worker", self.name, timeout)
        return False
