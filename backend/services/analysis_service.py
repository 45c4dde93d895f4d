"""
Analysis service - creates analyses, queues them and reads their state back
"""
import logging
from typing import Any, Dict, List, Optional

from models.analysis_job import AnalysisJob
from models.canonical import (
    AnalysisResult,
    ComponentThreatSet,
    DetectedComponent,
    DetectedConnection,
    DetectionMeta,
    JobStage,
    JobStatus,
    ProgressSnapshot,
)
from models.queued_job import QueueState
from services.errors import JobNotFound
from services.job_queue import JobQueue
from services.progress_channel import ProgressChannel
from services.progress_tracker import ProgressTracker

logger = logging.getLogger(__name__)


SUPPORTED_LANGUAGES = ("pt-BR", "en-US")


def load_result(job: AnalysisJob) -> Optional[AnalysisResult]:
    """Rebuild the aggregate from a completed job; the summary is recomputed"""
    if job.status != JobStatus.COMPLETED.value:
        return None

    meta = job.detection_meta or {}
    return AnalysisResult(
        provider=job.detected_provider or "unknown",
        mitigations=list(job.existing_mitigations or []),
        components=[DetectedComponent.from_dict(c) for c in job.components or []],
        connections=[DetectedConnection.from_dict(c) for c in job.connections or []],
        threat_sets=[ComponentThreatSet.from_dict(s) for s in job.threat_sets or []],
        detection_meta=DetectionMeta(
            secondary_available=meta.get("secondaryAvailable", False),
            secondary_detections=meta.get("secondaryDetections", 0),
            primary_detections=meta.get("primaryDetections", 0),
            merged_components=meta.get("mergedComponents", 0),
            secondary_inference_time_ms=meta.get("secondaryInferenceTimeMs"),
        ),
    )


class AnalysisService:
    """Handle analysis workflows on the request side"""

    def __init__(self, session_factory, queue: JobQueue, channel: ProgressChannel):
        self.session_factory = session_factory
        self.queue = queue
        self.channel = channel

    def create_analysis(
        self,
        image_name: str,
        image_data: bytes,
        mime_type: str,
        language: str = "pt-BR"
    ) -> AnalysisJob:
        """
        Store an uploaded diagram and queue it for processing

        Args:
            image_name: Original file name
            image_data: Raw image bytes
            mime_type: Image MIME type
            language: Output language for the threat model

        Returns:
            AnalysisJob in waiting
        """
        if language not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unsupported language: {language}")

        with self.session_factory() as db:
            job = AnalysisJob(
                image_name=image_name,
                image_data=image_data,
                image_mime_type=mime_type,
                language=language,
                status=JobStatus.PROCESSING.value,
                stage=JobStage.WAITING.value,
                progress_message="Analysis added to queue...",
                percentage=0,
                current_component=0,
                total_components=0,
            )
            db.add(job)
            db.commit()
            db.refresh(job)

        self.queue.add(job.id)
        logger.info(f"Analysis {job.id} created and added to queue")
        return job

    def get_analysis(self, analysis_id: str) -> AnalysisJob:
        with self.session_factory() as db:
            job = db.query(AnalysisJob).filter(AnalysisJob.id == analysis_id).first()
            if not job:
                raise JobNotFound(analysis_id)
            return job

    def list_analyses(self) -> List[AnalysisJob]:
        with self.session_factory() as db:
            return db.query(AnalysisJob).order_by(AnalysisJob.created_at.desc()).all()

    def get_progress(self, analysis_id: str) -> ProgressSnapshot:
        return self.get_analysis(analysis_id).snapshot()

    def get_result(self, analysis_id: str) -> Optional[AnalysisResult]:
        return load_result(self.get_analysis(analysis_id))

    def process_analysis(self, analysis_id: str) -> Dict[str, Any]:
        """(Re)queue an analysis unless it is completed or already queued"""
        job = self.get_analysis(analysis_id)

        if job.status == JobStatus.COMPLETED.value:
            return {"message": "Analysis already completed", "jobId": analysis_id, "status": job.status}

        existing = self.queue.get_job(analysis_id)
        if existing and existing.state in QueueState.PENDING:
            return {
                "message": "Analysis is already being processed",
                "jobId": existing.id,
                "status": JobStatus.PROCESSING.value,
            }

        tracker = ProgressTracker(analysis_id, self.session_factory, self.channel, stage=JobStage(job.stage))
        tracker.reset("Analysis added to queue...")
        self.queue.add(analysis_id)

        logger.info(f"Analysis {analysis_id} re-queued")
        return {"message": "Analysis started", "jobId": analysis_id, "status": JobStatus.PROCESSING.value}

    def delete_analysis(self, analysis_id: str) -> None:
        """Delete an analysis; refused while its job is running"""
        self.get_analysis(analysis_id)
        self.queue.remove(analysis_id)

        with self.session_factory() as db:
            db.query(AnalysisJob).filter(AnalysisJob.id == analysis_id).delete()
            db.commit()
        logger.info(f"Analysis {analysis_id} deleted")

    def get_queue_status(self) -> Dict[str, int]:
        counts = self.queue.get_counts()
        return {
            "waiting": counts[QueueState.WAITING] + counts[QueueState.DELAYED],
            "active": counts[QueueState.ACTIVE],
            "completed": counts[QueueState.COMPLETED],
            "failed": counts[QueueState.FAILED],
        }
