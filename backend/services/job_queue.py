"""
Durable job queue backed by the database

One entry per analysis id (the id is the primary key), so a duplicate
enqueue can never produce a second concurrent execution. Failed entries are
re-scheduled with exponential backoff until their attempts run out.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from config import Settings
from models.queued_job import QueuedJob, QueueState
from services.errors import QueueError

logger = logging.getLogger(__name__)


ANALYSIS_JOB_NAME = "process-analysis"


@dataclass
class JobOptions:
    """Retry and retention policy applied to every enqueued job"""
    attempts: int = 3
    backoff_ms: int = 5000
    keep_completed: int = 100
    keep_failed: int = 50
    priority: int = 1

    @classmethod
    def from_settings(cls, settings: Settings) -> "JobOptions":
        return cls(
            attempts=settings.queue_attempts,
            backoff_ms=settings.queue_backoff_ms,
            keep_completed=settings.queue_keep_completed,
            keep_failed=settings.queue_keep_failed,
        )


@dataclass
class JobEnvelope:
    """What gets enqueued: job id = analysis id"""
    job_id: str
    name: str = ANALYSIS_JOB_NAME
    payload: Dict[str, str] = field(default_factory=dict)
    options: JobOptions = field(default_factory=JobOptions)

    @classmethod
    def for_analysis(cls, analysis_id: str, options: JobOptions) -> "JobEnvelope":
        return cls(job_id=analysis_id, payload={"analysisId": analysis_id}, options=options)


def backoff_delay(base_ms: int, attempts_made: int) -> timedelta:
    """base * 2^(attempts_made - 1): 5s, 10s, 20s, ..."""
    return timedelta(milliseconds=base_ms * (2 ** max(attempts_made - 1, 0)))


class JobQueue:
    """Queue client handle; pass it explicitly to whoever enqueues or consumes"""

    def __init__(self, session_factory, options: JobOptions = None):
        self.session_factory = session_factory
        self.options = options or JobOptions()
        self._lock = threading.Lock()

    def add(self, analysis_id: str) -> Tuple[QueuedJob, bool]:
        """
        Enqueue an analysis

        Returns:
            (queue entry, created). created is False when the analysis is
            already waiting, delayed or active; that entry is returned as is.
        """
        envelope = JobEnvelope.for_analysis(analysis_id, self.options)
        now = datetime.utcnow()

        with self._lock, self.session_factory() as db:
            existing = db.query(QueuedJob).filter(QueuedJob.id == envelope.job_id).first()
            if existing and existing.state in QueueState.PENDING:
                logger.info(f"Analysis {analysis_id} already queued ({existing.state}), not enqueueing again")
                return existing, False

            if existing:
                # Finished entry kept for retention; reuse it for the new run
                existing.state = QueueState.WAITING
                existing.payload = envelope.payload
                existing.attempts_made = 0
                existing.max_attempts = envelope.options.attempts
                existing.backoff_ms = envelope.options.backoff_ms
                existing.run_at = now
                existing.last_error = None
                existing.started_at = None
                existing.finished_at = None
                existing.created_at = now
                entry = existing
            else:
                entry = QueuedJob(
                    id=envelope.job_id,
                    name=envelope.name,
                    payload=envelope.payload,
                    state=QueueState.WAITING,
                    priority=envelope.options.priority,
                    max_attempts=envelope.options.attempts,
                    backoff_ms=envelope.options.backoff_ms,
                    run_at=now,
                    created_at=now,
                )
                db.add(entry)

            try:
                db.commit()
            except IntegrityError:
                # Another process enqueued the same id first
                db.rollback()
                entry = db.query(QueuedJob).filter(QueuedJob.id == envelope.job_id).first()
                return entry, False

            logger.info(f"Analysis {analysis_id} added to queue")
            return entry, True

    def get_job(self, job_id: str) -> Optional[QueuedJob]:
        with self.session_factory() as db:
            return db.query(QueuedJob).filter(QueuedJob.id == job_id).first()

    def remove(self, job_id: str) -> bool:
        """Remove a queue entry; an active job cannot be removed"""
        with self._lock, self.session_factory() as db:
            entry = db.query(QueuedJob).filter(QueuedJob.id == job_id).first()
            if not entry:
                return False
            if entry.state == QueueState.ACTIVE:
                raise QueueError(f"Job {job_id} is running and cannot be removed")
            db.delete(entry)
            db.commit()
            logger.info(f"Removed job {job_id} from queue")
            return True

    def claim_next(self, now: Optional[datetime] = None) -> Optional[str]:
        """Atomically move the next ready entry to active and return its id"""
        now = now or datetime.utcnow()
        with self._lock, self.session_factory() as db:
            while True:
                entry = (
                    db.query(QueuedJob)
                    .filter(
                        QueuedJob.state.in_([QueueState.WAITING, QueueState.DELAYED]),
                        QueuedJob.run_at <= now
                    )
                    .order_by(QueuedJob.priority, QueuedJob.run_at, QueuedJob.created_at)
                    .first()
                )
                if not entry:
                    return None

                claimed = (
                    db.query(QueuedJob)
                    .filter(QueuedJob.id == entry.id, QueuedJob.state == entry.state)
                    .update(
                        {QueuedJob.state: QueueState.ACTIVE, QueuedJob.started_at: now},
                        synchronize_session=False
                    )
                )
                db.commit()
                if claimed == 1:
                    return entry.id
                db.expire_all()

    def mark_completed(self, job_id: str) -> None:
        with self._lock, self.session_factory() as db:
            entry = db.query(QueuedJob).filter(QueuedJob.id == job_id).first()
            if not entry:
                return
            entry.state = QueueState.COMPLETED
            entry.finished_at = datetime.utcnow()
            db.commit()
            self._prune(db, QueueState.COMPLETED, self.options.keep_completed)

    def mark_failed(self, job_id: str, error: str, retry: bool = True) -> bool:
        """
        Record a failed attempt

        Returns:
            True if the job was re-scheduled, False if it is now failed for good
        """
        now = datetime.utcnow()
        with self._lock, self.session_factory() as db:
            entry = db.query(QueuedJob).filter(QueuedJob.id == job_id).first()
            if not entry:
                return False

            entry.attempts_made = (entry.attempts_made or 0) + 1
            entry.last_error = error

            if retry and entry.attempts_made < entry.max_attempts:
                delay = backoff_delay(entry.backoff_ms, entry.attempts_made)
                entry.state = QueueState.DELAYED
                entry.run_at = now + delay
                db.commit()
                logger.warning(
                    f"Job {job_id} failed (attempt {entry.attempts_made}/{entry.max_attempts}), "
                    f"retrying in {delay.total_seconds():.0f}s"
                )
                return True

            entry.state = QueueState.FAILED
            entry.finished_at = now
            db.commit()
            logger.error(f"Job {job_id} failed permanently after {entry.attempts_made} attempts: {error}")
            self._prune(db, QueueState.FAILED, self.options.keep_failed)
            return False

    def recover_stalled(self) -> int:
        """Put entries left active by a previous process back in line"""
        with self._lock, self.session_factory() as db:
            count = (
                db.query(QueuedJob)
                .filter(QueuedJob.state == QueueState.ACTIVE)
                .update(
                    {QueuedJob.state: QueueState.WAITING, QueuedJob.run_at: datetime.utcnow()},
                    synchronize_session=False
                )
            )
            db.commit()
        if count:
            logger.warning(f"Recovered {count} stalled jobs")
        return count

    def get_counts(self) -> Dict[str, int]:
        with self.session_factory() as db:
            counts = {
                state: db.query(QueuedJob).filter(QueuedJob.state == state).count()
                for state in (
                    QueueState.WAITING,
                    QueueState.DELAYED,
                    QueueState.ACTIVE,
                    QueueState.COMPLETED,
                    QueueState.FAILED,
                )
            }
        return counts

    def _prune(self, db, state: str, keep: int) -> None:
        stale = (
            db.query(QueuedJob)
            .filter(QueuedJob.state == state)
            .order_by(QueuedJob.finished_at.desc())
            .offset(keep)
            .all()
        )
        for entry in stale:
            db.delete(entry)
        if stale:
            db.commit()
            logger.debug(f"Pruned {len(stale)} {state} jobs")
