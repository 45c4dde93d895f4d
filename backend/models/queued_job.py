"""
Queued Job model - durable queue entry, one per analysis id
"""
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer
from datetime import datetime
from database import Base


class QueueState:
    """Queue entry states"""
    WAITING = "waiting"
    DELAYED = "delayed"  # Waiting for backoff to expire
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    PENDING = (WAITING, DELAYED, ACTIVE)


class QueuedJob(Base):
    __tablename__ = "queued_jobs"

    # The analysis id doubles as the job id, so enqueueing is unique per analysis
    id = Column(String, primary_key=True)
    name = Column(String(100), default="process-analysis")
    payload = Column(JSON)

    state = Column(String(20), default=QueueState.WAITING, index=True)
    priority = Column(Integer, default=1)

    # Retry policy
    attempts_made = Column(Integer, default=0)
    max_attempts = Column(Integer, default=3)
    backoff_ms = Column(Integer, default=5000)
    run_at = Column(DateTime, default=datetime.utcnow, index=True)
    last_error = Column(Text)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)

    def __repr__(self):
        return f"<QueuedJob {self.id} - {self.state} ({self.attempts_made}/{self.max_attempts})>"
