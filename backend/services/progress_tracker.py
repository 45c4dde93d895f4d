"""
Progress State Machine

    waiting -> detecting_components -> analyzing_stride -> generating_report -> completed
                    \\-----------------------------------/
    failed is reachable from every non-terminal stage

Every transition persists a snapshot on the AnalysisJob row and publishes the
same snapshot on the ProgressChannel, so polling and pushing never disagree.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from models.analysis_job import AnalysisJob
from models.canonical import AnalysisResult, JobStage, JobStatus, ProgressSnapshot
from services.errors import InvalidTransition, JobNotFound, StagePersistenceFailure
from services.progress_channel import ProgressChannel

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    JobStage.WAITING: {JobStage.DETECTING_COMPONENTS},
    JobStage.DETECTING_COMPONENTS: {
        JobStage.DETECTING_COMPONENTS,
        JobStage.ANALYZING_STRIDE,
        JobStage.GENERATING_REPORT,  # Nothing detected, nothing to analyze
    },
    JobStage.ANALYZING_STRIDE: {JobStage.ANALYZING_STRIDE, JobStage.GENERATING_REPORT},
    JobStage.GENERATING_REPORT: {JobStage.COMPLETED},
    JobStage.COMPLETED: set(),
    JobStage.FAILED: set(),
}


class ProgressTracker:
    """Owns the progress columns of one AnalysisJob for one run"""

    def __init__(
        self,
        analysis_id: str,
        session_factory,
        channel: ProgressChannel,
        stage: JobStage = JobStage.WAITING
    ):
        self.analysis_id = analysis_id
        self.session_factory = session_factory
        self.channel = channel
        self.stage = stage
        self.percentage = 0
        self.current_component = 0
        self.total_components = 0

    def reset(self, message: str = "Analysis queued") -> ProgressSnapshot:
        """Return the job to waiting for a fresh run (retry or redelivery)"""
        self.stage = JobStage.WAITING
        self.percentage = 0
        self.current_component = 0
        self.total_components = 0
        snapshot = self._snapshot(JobStatus.PROCESSING, message)
        self._persist(snapshot, error=None)
        return snapshot

    def advance(
        self,
        stage: JobStage,
        message: str,
        percentage: int,
        current_component: Optional[int] = None,
        total_components: Optional[int] = None
    ) -> ProgressSnapshot:
        """Move to a non-terminal stage (or stay in it) and persist the snapshot"""
        if stage.is_terminal:
            raise InvalidTransition(f"Use complete()/fail() to enter {stage.value}")
        self._check_transition(stage)
        if percentage < self.percentage:
            raise InvalidTransition(
                f"Progress cannot go backwards ({self.percentage}% -> {percentage}%)"
            )

        self.stage = stage
        self.percentage = max(0, min(100, percentage))
        if current_component is not None:
            self.current_component = current_component
        if total_components is not None:
            self.total_components = total_components

        snapshot = self._snapshot(JobStatus.PROCESSING, message)
        self._persist(snapshot)
        return snapshot

    def complete(self, result: AnalysisResult, message: str = "Analysis completed") -> ProgressSnapshot:
        """Write the result and the terminal snapshot in one commit"""
        self._check_transition(JobStage.COMPLETED)
        result.validate()

        total = len(result.components)
        snapshot = ProgressSnapshot(
            analysis_id=self.analysis_id,
            status=JobStatus.COMPLETED,
            stage=JobStage.COMPLETED,
            message=message,
            percentage=100,
            current_component=total,
            total_components=total,
        )

        def write_result(job: AnalysisJob):
            job.detected_provider = result.provider
            job.existing_mitigations = list(result.mitigations)
            job.components = [c.to_dict() for c in result.components]
            job.connections = [c.to_dict() for c in result.connections]
            job.threat_sets = [s.to_dict() for s in result.threat_sets]
            job.summary = result.summary.to_dict()
            job.detection_meta = result.detection_meta.to_dict()
            job.completed_at = snapshot.timestamp

        self._persist(snapshot, error=None, extra=write_result)
        self.stage = JobStage.COMPLETED
        self.percentage = 100
        self.current_component = total
        self.total_components = total
        return snapshot

    def fail(self, error_message: str) -> ProgressSnapshot:
        """Mark the job failed; progress resets to 0%"""
        self._check_transition(JobStage.FAILED)
        snapshot = ProgressSnapshot(
            analysis_id=self.analysis_id,
            status=JobStatus.FAILED,
            stage=JobStage.FAILED,
            message=f"Error: {error_message}",
            percentage=0,
            current_component=self.current_component,
            total_components=self.total_components,
        )
        self._persist(snapshot, error=error_message)
        self.stage = JobStage.FAILED
        self.percentage = 0
        return snapshot

    def _check_transition(self, target: JobStage) -> None:
        if target == JobStage.FAILED and not self.stage.is_terminal:
            return
        if target not in ALLOWED_TRANSITIONS[self.stage]:
            raise InvalidTransition(f"Illegal transition {self.stage.value} -> {target.value}")

    def _snapshot(self, status: JobStatus, message: str) -> ProgressSnapshot:
        return ProgressSnapshot(
            analysis_id=self.analysis_id,
            status=status,
            stage=self.stage,
            message=message,
            percentage=self.percentage,
            current_component=self.current_component,
            total_components=self.total_components,
            timestamp=datetime.utcnow(),
        )

    _KEEP = object()

    def _persist(self, snapshot: ProgressSnapshot, error=_KEEP, extra=None) -> None:
        try:
            with self.session_factory() as db:
                job = db.query(AnalysisJob).filter(AnalysisJob.id == self.analysis_id).first()
                if not job:
                    raise JobNotFound(self.analysis_id)

                job.status = snapshot.status.value
                job.stage = snapshot.stage.value
                job.progress_message = snapshot.message
                job.percentage = snapshot.percentage
                job.current_component = snapshot.current_component
                job.total_components = snapshot.total_components
                job.progress_updated_at = snapshot.timestamp
                if error is not ProgressTracker._KEEP:
                    job.error = error
                if extra is not None:
                    extra(job)

                db.commit()
        except SQLAlchemyError as e:
            raise StagePersistenceFailure(f"Failed to persist progress for {self.analysis_id}: {e}") from e

        logger.debug(f"[{self.analysis_id}] {snapshot.stage.value} {snapshot.percentage}%: {snapshot.message}")
        self.channel.publish(snapshot)
