"""
Analysis Job model - one uploaded diagram and its threat model
"""
from sqlalchemy import Column, String, DateTime, Text, JSON, Integer, LargeBinary
from datetime import datetime
import uuid
from database import Base
from models.canonical import JobStatus, JobStage, ProgressSnapshot


class AnalysisJob(Base):
    __tablename__ = "analysis_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    # Source image
    image_name = Column(String(255), nullable=False)
    image_data = Column(LargeBinary, nullable=False)
    image_mime_type = Column(String(50), default="image/png")
    language = Column(String(10), default="pt-BR")  # pt-BR, en-US

    # Status
    status = Column(String(20), default=JobStatus.PROCESSING.value)  # processing, completed, failed
    error = Column(Text)

    # Progress snapshot
    stage = Column(String(30), default=JobStage.WAITING.value)
    progress_message = Column(String(500), default="")
    percentage = Column(Integer, default=0)
    current_component = Column(Integer, default=0)
    total_components = Column(Integer, default=0)
    progress_updated_at = Column(DateTime, default=datetime.utcnow)

    # Results (written only when the job completes)
    detected_provider = Column(String(50))
    existing_mitigations = Column(JSON)
    components = Column(JSON)
    connections = Column(JSON)
    threat_sets = Column(JSON)
    summary = Column(JSON)
    detection_meta = Column(JSON)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime)

    def snapshot(self) -> ProgressSnapshot:
        """Current persisted progress"""
        return ProgressSnapshot(
            analysis_id=self.id,
            status=JobStatus(self.status or JobStatus.PROCESSING.value),
            stage=JobStage(self.stage or JobStage.WAITING.value),
            message=self.progress_message or "",
            percentage=self.percentage or 0,
            current_component=self.current_component or 0,
            total_components=self.total_components or 0,
            timestamp=self.progress_updated_at,
        )

    def __repr__(self):
        return f"<AnalysisJob {self.id} - {self.status}/{self.stage}>"
