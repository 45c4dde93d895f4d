"""
Analysis processor - the job worker that runs one analysis end to end

Stages run strictly in order:
    detect (primary + secondary) -> merge -> STRIDE per component -> summary -> persist

A completed job is never processed again. Any fatal error marks the job
failed and is re-raised so the queue can retry it; a retry starts over from
waiting, nothing is resumed.
"""
import logging
from typing import List

from config import Settings, get_settings
from models.analysis_job import AnalysisJob
from models.canonical import (
    AnalysisResult,
    DetectedComponent,
    DetectedConnection,
    JobStage,
    JobStatus,
    PrimaryDetectionResult,
    SecondaryDetectionResult,
)
from services.errors import JobNotFound
from services.merge_engine import reconcile
from services.primary_detector import PrimaryDetector
from services.progress_channel import ProgressChannel
from services.progress_tracker import ProgressTracker
from services.secondary_detector import SecondaryDetector
from services.threat_analyzer import AnalysisContext, ThreatAnalyzer
from services.threat_enumeration import ThreatEnumerationStage, component_progress

logger = logging.getLogger(__name__)


class AnalysisProcessor:
    """Processes analysis jobs delivered by the queue"""

    def __init__(
        self,
        session_factory,
        channel: ProgressChannel,
        primary_detector: PrimaryDetector,
        secondary_detector: SecondaryDetector,
        threat_analyzer: ThreatAnalyzer,
        settings: Settings = None
    ):
        self.session_factory = session_factory
        self.channel = channel
        self.primary_detector = primary_detector
        self.secondary_detector = secondary_detector
        self.threat_stage = ThreatEnumerationStage(threat_analyzer)
        self.settings = settings or get_settings()

    def process(self, job_id: str) -> None:
        """
        Run the full pipeline for one analysis

        Args:
            job_id: Analysis id (also the queue job id)

        Raises:
            JobNotFound: No analysis record exists
            Exception: Whatever made the run fail, after the job was marked failed
        """
        logger.info(f"Processing analysis job: {job_id}")

        with self.session_factory() as db:
            job = db.query(AnalysisJob).filter(AnalysisJob.id == job_id).first()
            if not job:
                raise JobNotFound(job_id)

            if job.status == JobStatus.COMPLETED.value:
                logger.info(f"Analysis {job_id} already completed, skipping")
                return

            image = job.image_data
            mime_type = job.image_mime_type or "image/png"
            language = job.language or self.settings.default_language
            stage = JobStage(job.stage or JobStage.WAITING.value)

        tracker = ProgressTracker(job_id, self.session_factory, self.channel, stage=stage)
        try:
            if tracker.stage != JobStage.WAITING:
                logger.info(f"Analysis {job_id} was left in {stage.value}, restarting from scratch")
                tracker.reset("Restarting analysis...")

            self._run_pipeline(tracker, image, mime_type, language)
        except Exception as e:
            logger.error(f"Analysis {job_id} failed: {e}", exc_info=True)
            tracker.fail(str(e))
            raise

        logger.info(f"Analysis {job_id} completed successfully")

    def _run_pipeline(self, tracker: ProgressTracker, image: bytes, mime_type: str, language: str) -> None:
        # Step 1: Detecting components (0-30%)
        tracker.advance(JobStage.DETECTING_COMPONENTS, "Detecting components in the architecture...", 5)

        primary = self._detect_primary(image, mime_type, language)
        secondary_available, secondary = self._detect_secondary(image, mime_type)

        # Step 2: Merge into the canonical component list
        outcome = reconcile(primary, secondary, secondary_available)
        components = outcome.components
        connections = self._valid_connections(components, primary.connections)
        total = len(components)

        tracker.advance(
            JobStage.DETECTING_COMPONENTS,
            f"{total} components detected",
            30,
            total_components=total
        )

        # Step 3: STRIDE analysis (30-90%)
        context = AnalysisContext(provider=primary.provider, mitigations=primary.mitigations, language=language)

        def on_component(index: int, count: int, component: DetectedComponent):
            tracker.advance(
                JobStage.ANALYZING_STRIDE,
                f"Analyzing STRIDE: {component.name}",
                component_progress(index, count),
                current_component=index + 1,
                total_components=count
            )

        threat_sets = self.threat_stage.run(components, connections, context, on_component=on_component)

        # Step 4: Generating report (90-100%)
        tracker.advance(
            JobStage.GENERATING_REPORT,
            "Generating final report...",
            95,
            current_component=total,
            total_components=total
        )

        result = AnalysisResult(
            provider=primary.provider,
            mitigations=primary.mitigations,
            components=components,
            connections=connections,
            threat_sets=threat_sets,
            detection_meta=outcome.meta,
        )
        tracker.complete(result, "Analysis completed successfully!")

        summary = result.summary
        logger.info(
            f"Analysis {tracker.analysis_id}: {summary.total_components} components, "
            f"{summary.total_threats} threats ({summary.critical_threats} critical, {summary.high_threats} high)"
        )

    def _detect_primary(self, image: bytes, mime_type: str, language: str) -> PrimaryDetectionResult:
        """Primary detector output, or an empty result if it failed in any way"""
        try:
            return self.primary_detector.detect(image, mime_type, language)
        except Exception as e:
            logger.error(f"Primary detection failed, continuing with empty result: {e}", exc_info=True)
            return PrimaryDetectionResult.empty()

    def _detect_secondary(self, image: bytes, mime_type: str):
        """(available, result); an unavailable detector is simply skipped"""
        try:
            available = self.secondary_detector.probe()
        except Exception as e:
            logger.warning(f"Secondary detector probe failed: {e}", exc_info=True)
            available = False

        if not available:
            logger.info("Secondary detector unavailable, using primary detections only")
            return False, SecondaryDetectionResult.unavailable()

        try:
            result = self.secondary_detector.detect(image, mime_type, self.settings.secondary_confidence)
        except Exception as e:
            logger.warning(f"Secondary detection failed, continuing without it: {e}", exc_info=True)
            result = SecondaryDetectionResult.unavailable()
        return True, result

    def _valid_connections(
        self,
        components: List[DetectedComponent],
        connections: List[DetectedConnection]
    ) -> List[DetectedConnection]:
        """Drop connections whose endpoints are not canonical components"""
        ids = {c.id for c in components}
        valid = [c for c in connections if c.source in ids and c.target in ids]
        if len(valid) != len(connections):
            logger.warning(f"Dropped {len(connections) - len(valid)} connections with unknown endpoints")
        return valid
