"""
Business Logic Services for Diagram Threat Modeling

This package provides:
- Detector / analyzer capability clients
- Detection merging and STRIDE enumeration
- Progress tracking, channel and stream
- Durable job queue, worker pool and the analysis processor
"""

# Errors
from .errors import (
    PipelineError,
    JobNotFound,
    DetectorUnavailable,
    MalformedResponse,
    InvalidTransition,
    StagePersistenceFailure,
    QueueError,
)

# Capabilities
from .primary_detector import PrimaryDetector, OpenAIPrimaryDetector
from .secondary_detector import SecondaryDetector, HttpSecondaryDetector
from .threat_analyzer import ThreatAnalyzer, OpenAIThreatAnalyzer, AnalysisContext

# Pipeline stages
from .merge_engine import merge_detections, reconcile, SECONDARY_CONFIDENCE_THRESHOLD
from .threat_enumeration import ThreatEnumerationStage

# Progress
from .progress_channel import ProgressChannel
from .progress_tracker import ProgressTracker
from .progress_stream import ProgressStream

# Jobs
from .job_queue import JobQueue, JobOptions, JobEnvelope
from .analysis_processor import AnalysisProcessor
from .worker_pool import WorkerPool
from .analysis_service import AnalysisService
from .container import ServiceContainer

__all__ = [
    # Errors
    "PipelineError",
    "JobNotFound",
    "DetectorUnavailable",
    "MalformedResponse",
    "InvalidTransition",
    "StagePersistenceFailure",
    "QueueError",

    # Capabilities
    "PrimaryDetector",
    "OpenAIPrimaryDetector",
    "SecondaryDetector",
    "HttpSecondaryDetector",
    "ThreatAnalyzer",
    "OpenAIThreatAnalyzer",
    "AnalysisContext",

    # Pipeline stages
    "merge_detections",
    "reconcile",
    "SECONDARY_CONFIDENCE_THRESHOLD",
    "ThreatEnumerationStage",

    # Progress
    "ProgressChannel",
    "ProgressTracker",
    "ProgressStream",

    # Jobs
    "JobQueue",
    "JobOptions",
    "JobEnvelope",
    "AnalysisProcessor",
    "WorkerPool",
    "AnalysisService",
    "ServiceContainer",
]
