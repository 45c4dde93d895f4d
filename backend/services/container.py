"""
Service container - builds every collaborator once and wires them explicitly

No module-level singletons: the FastAPI lifespan creates one container and
stores it on app.state, tests build their own.
"""
import logging
from dataclasses import dataclass

from config import Settings
from database import create_db_engine, create_session_factory
from services.analysis_processor import AnalysisProcessor
from services.analysis_service import AnalysisService
from services.job_queue import JobOptions, JobQueue
from services.primary_detector import OpenAIPrimaryDetector, PrimaryDetector
from services.progress_channel import ProgressChannel
from services.progress_stream import ProgressStream
from services.secondary_detector import HttpSecondaryDetector, SecondaryDetector
from services.threat_analyzer import OpenAIThreatAnalyzer, ThreatAnalyzer
from services.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    session_factory: object
    channel: ProgressChannel
    queue: JobQueue
    processor: AnalysisProcessor
    analysis_service: AnalysisService
    progress_stream: ProgressStream
    worker_pool: WorkerPool

    @classmethod
    def build(
        cls,
        settings: Settings,
        session_factory=None,
        primary_detector: PrimaryDetector = None,
        secondary_detector: SecondaryDetector = None,
        threat_analyzer: ThreatAnalyzer = None
    ) -> "ServiceContainer":
        if session_factory is None:
            session_factory = create_session_factory(create_db_engine(settings.database_url))

        channel = ProgressChannel()
        queue = JobQueue(session_factory, JobOptions.from_settings(settings))

        processor = AnalysisProcessor(
            session_factory=session_factory,
            channel=channel,
            primary_detector=primary_detector or OpenAIPrimaryDetector(settings),
            secondary_detector=secondary_detector or HttpSecondaryDetector(settings),
            threat_analyzer=threat_analyzer or OpenAIThreatAnalyzer(settings),
            settings=settings,
        )
        analysis_service = AnalysisService(session_factory, queue, channel)

        return cls(
            settings=settings,
            session_factory=session_factory,
            channel=channel,
            queue=queue,
            processor=processor,
            analysis_service=analysis_service,
            progress_stream=ProgressStream(
                analysis_service.get_progress,
                channel=channel,
                interval=settings.progress_poll_interval
            ),
            worker_pool=WorkerPool(
                queue,
                processor,
                max_workers=settings.max_workers,
                poll_interval=settings.queue_poll_interval
            ),
        )
