"""
Worker pool - bounded number of analysis jobs running in parallel

A dispatcher thread claims ready queue entries and hands them to a
ThreadPoolExecutor. Within one job everything is sequential.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from services.analysis_processor import AnalysisProcessor
from services.errors import JobNotFound
from services.job_queue import JobQueue

logger = logging.getLogger(__name__)


class WorkerPool:
    """Drains the JobQueue with at most max_workers concurrent jobs"""

    def __init__(
        self,
        queue: JobQueue,
        processor: AnalysisProcessor,
        max_workers: int = 4,
        poll_interval: float = 1.0
    ):
        self.queue = queue
        self.processor = processor
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self._slots = threading.BoundedSemaphore(max_workers)
        self._stop = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._dispatcher: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._dispatcher and self._dispatcher.is_alive():
            return
        self.queue.recover_stalled()
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="analysis-worker")
        self._dispatcher = threading.Thread(target=self._dispatch_loop, name="analysis-dispatcher", daemon=True)
        self._dispatcher.start()
        logger.info(f"Worker pool started with {self.max_workers} workers")

    def stop(self, wait: bool = True) -> None:
        """Stop claiming new jobs; running jobs finish (there is no cancellation)"""
        self._stop.set()
        if self._dispatcher:
            self._dispatcher.join(timeout=self.poll_interval * 2)
        if self._executor:
            self._executor.shutdown(wait=wait)
        logger.info("Worker pool stopped")

    def run_once(self) -> int:
        """Run every ready job on the calling thread; returns how many ran"""
        processed = 0
        while True:
            job_id = self.queue.claim_next()
            if not job_id:
                return processed
            self._execute(job_id)
            processed += 1

    def _dispatch_loop(self) -> None:
        while not self._stop.is_set():
            if not self._slots.acquire(timeout=self.poll_interval):
                continue

            try:
                job_id = self.queue.claim_next()
            except Exception as e:
                logger.error(f"Failed to claim next job: {e}", exc_info=True)
                job_id = None

            if not job_id:
                self._slots.release()
                self._stop.wait(self.poll_interval)
                continue

            self._executor.submit(self._run_in_slot, job_id)

    def _run_in_slot(self, job_id: str) -> None:
        try:
            self._execute(job_id)
        finally:
            self._slots.release()

    def _execute(self, job_id: str) -> None:
        error, retry = None, True
        try:
            self.processor.process(job_id)
        except JobNotFound as e:
            error, retry = str(e), False
        except Exception as e:
            error = str(e)

        # On failure the entry stays active until recover_stalled
        try:
            if error is None:
                self.queue.mark_completed(job_id)
            else:
                self.queue.mark_failed(job_id, error, retry=retry)
        except Exception as e:
            logger.error(f"Failed to settle queue entry {job_id}: {e}", exc_info=True)
