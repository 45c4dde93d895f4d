"""End-to-end tests for the analysis pipeline with fake capabilities"""
import pytest

from conftest import (
    FakePrimaryDetector,
    FakeSecondaryDetector,
    FakeThreatAnalyzer,
    component,
    detection,
    sample_primary,
)

from models.canonical import (
    ComponentType,
    DetectedConnection,
    JobStage,
    JobStatus,
    PrimaryDetectionResult,
)
from services.analysis_processor import AnalysisProcessor
from services.errors import DetectorUnavailable, JobNotFound, StagePersistenceFailure
from services.progress_tracker import ProgressTracker


def _processor(session_factory, channel, settings, primary=None, secondary=None, analyzer=None):
    return AnalysisProcessor(
        session_factory=session_factory,
        channel=channel,
        primary_detector=primary or FakePrimaryDetector(sample_primary()),
        secondary_detector=secondary or FakeSecondaryDetector(available=False),
        threat_analyzer=analyzer or FakeThreatAnalyzer(),
        settings=settings,
    )


def test_completes_and_persists_result(session_factory, channel, settings, published, make_job, load_job):
    job_id = make_job()
    secondary = FakeSecondaryDetector(
        detections=[detection(ComponentType.DATABASE, 0.93), detection(ComponentType.CACHE, 0.4)]
    )

    _processor(session_factory, channel, settings, secondary=secondary).process(job_id)

    job = load_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.stage == JobStage.COMPLETED.value
    assert job.percentage == 100
    assert job.error is None
    assert job.detected_provider == "aws"
    assert job.existing_mitigations == ["AWS WAF", "KMS"]

    assert [c["id"] for c in job.components] == ["users", "alb", "app", "db", "secondary-cache-1"]
    assert job.components[3]["provenance"] == "hybrid"
    assert job.components[3]["secondaryConfidence"] == 0.93
    assert job.components[4]["provenance"] == "secondary"
    assert [s["componentId"] for s in job.threat_sets] == [c["id"] for c in job.components]
    assert len(job.connections) == 3

    assert job.summary == {
        "totalComponents": 5,
        "totalThreats": 10,
        "criticalThreats": 0,
        "highThreats": 5,
        "mediumThreats": 0,
        "lowThreats": 5,
    }
    assert job.detection_meta["secondaryAvailable"] is True
    assert job.detection_meta["mergedComponents"] == 5
    assert secondary.detect_calls == [settings.secondary_confidence]


def test_progress_milestones(session_factory, channel, settings, published, make_job):
    job_id = make_job()

    _processor(session_factory, channel, settings).process(job_id)

    percentages = [s.percentage for s in published]
    assert percentages == [5, 30, 30, 45, 60, 75, 95, 100]
    assert percentages == sorted(percentages)
    assert [s.stage for s in published][:2] == [JobStage.DETECTING_COMPONENTS] * 2
    assert published[2].stage == JobStage.ANALYZING_STRIDE
    assert published[2].current_component == 1
    assert published[5].current_component == 4
    assert published[-2].stage == JobStage.GENERATING_REPORT
    assert published[-1].stage == JobStage.COMPLETED
    assert all(s.analysis_id == job_id for s in published)


def test_completed_job_is_not_processed_again(session_factory, channel, settings, make_job, load_job):
    job_id = make_job()
    primary = FakePrimaryDetector(sample_primary())
    analyzer = FakeThreatAnalyzer()
    processor = _processor(session_factory, channel, settings, primary=primary, analyzer=analyzer)

    processor.process(job_id)
    first = load_job(job_id)
    processor.process(job_id)
    second = load_job(job_id)

    assert len(primary.calls) == 1
    assert len(analyzer.calls) == 4
    assert second.components == first.components
    assert second.completed_at == first.completed_at


def test_missing_job_raises(session_factory, channel, settings):
    with pytest.raises(JobNotFound):
        _processor(session_factory, channel, settings).process("missing")


def test_unavailable_secondary_uses_primary_only(session_factory, channel, settings, make_job, load_job):
    job_id = make_job()
    secondary = FakeSecondaryDetector(available=False, detections=[detection(ComponentType.CDN, 0.9)])

    _processor(session_factory, channel, settings, secondary=secondary).process(job_id)

    job = load_job(job_id)
    assert secondary.probe_calls == 1
    assert secondary.detect_calls == []
    assert all(c["provenance"] == "primary" for c in job.components)
    assert len(job.components) == 4
    assert job.detection_meta["secondaryAvailable"] is False
    assert job.detection_meta["secondaryDetections"] == 0


def test_fatal_analyzer_error_fails_job(session_factory, channel, settings, published, make_job, load_job):
    job_id = make_job()
    primary = FakePrimaryDetector(PrimaryDetectionResult(
        provider="azure",
        components=[component(f"c{i}") for i in range(1, 6)],
    ))
    analyzer = FakeThreatAnalyzer(overrides={"c3": RuntimeError("rate limited")})

    with pytest.raises(RuntimeError, match="rate limited"):
        _processor(session_factory, channel, settings, primary=primary, analyzer=analyzer).process(job_id)

    job = load_job(job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.stage == JobStage.FAILED.value
    assert job.percentage == 0
    assert job.error == "rate limited"
    assert job.components is None
    assert job.threat_sets is None
    assert job.summary is None
    assert [call[0] for call in analyzer.calls] == ["c1", "c2", "c3"]
    assert published[-1].status == JobStatus.FAILED


def test_primary_failure_completes_with_no_components(session_factory, channel, settings, published, make_job, load_job):
    job_id = make_job()
    primary = FakePrimaryDetector(error=ValueError("vision model refused"))

    _processor(session_factory, channel, settings, primary=primary).process(job_id)

    job = load_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.components == []
    assert job.detected_provider == "unknown"
    assert job.summary["totalComponents"] == 0
    assert [s.percentage for s in published] == [5, 30, 95, 100]


def test_failed_job_restarts_from_scratch(session_factory, channel, settings, make_job, load_job):
    job_id = make_job()
    flaky = FakeThreatAnalyzer(overrides={"app": RuntimeError("timeout")})

    with pytest.raises(RuntimeError):
        _processor(session_factory, channel, settings, analyzer=flaky).process(job_id)
    assert load_job(job_id).status == JobStatus.FAILED.value

    _processor(session_factory, channel, settings).process(job_id)

    job = load_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.error is None
    assert len(job.threat_sets) == 4


def test_dangling_connections_are_dropped(session_factory, channel, settings, make_job, load_job):
    job_id = make_job()
    primary = sample_primary()
    primary.connections.append(DetectedConnection("app", "ghost", "TCP", None, None, "Unknown peer"))

    _processor(session_factory, channel, settings, primary=FakePrimaryDetector(primary)).process(job_id)

    job = load_job(job_id)
    assert len(job.connections) == 3
    assert all(c["to"] != "ghost" for c in job.connections)


def test_language_is_passed_to_capabilities(session_factory, channel, settings, make_job):
    job_id = make_job(language="pt-BR")
    primary = FakePrimaryDetector(sample_primary())
    analyzer = FakeThreatAnalyzer()

    _processor(session_factory, channel, settings, primary=primary, analyzer=analyzer).process(job_id)

    assert primary.calls[0][2] == "pt-BR"
    assert all(call[2].language == "pt-BR" for call in analyzer.calls)
    assert analyzer.calls[0][2].provider == "aws"


class RaisingSecondaryDetector(FakeSecondaryDetector):
    def __init__(self, probe_error=None, detect_error=None):
        super().__init__(available=True)
        self.probe_error = probe_error
        self.detect_error = detect_error

    def probe(self):
        if self.probe_error:
            raise self.probe_error
        return super().probe()

    def detect(self, image, mime_type, confidence_threshold):
        if self.detect_error:
            raise self.detect_error
        return super().detect(image, mime_type, confidence_threshold)


def test_raising_secondary_probe_is_not_fatal(session_factory, channel, settings, make_job, load_job):
    job_id = make_job()
    secondary = RaisingSecondaryDetector(probe_error=DetectorUnavailable("connection reset"))

    _processor(session_factory, channel, settings, secondary=secondary).process(job_id)

    job = load_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.detection_meta["secondaryAvailable"] is False
    assert all(c["provenance"] == "primary" for c in job.components)


def test_raising_secondary_detect_is_not_fatal(session_factory, channel, settings, make_job, load_job):
    job_id = make_job()
    secondary = RaisingSecondaryDetector(detect_error=RuntimeError("model crashed"))

    _processor(session_factory, channel, settings, secondary=secondary).process(job_id)

    job = load_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.detection_meta["secondaryAvailable"] is True
    assert job.detection_meta["secondaryDetections"] == 0
    assert len(job.components) == 4


def test_reset_failure_marks_job_failed(session_factory, channel, settings, published, make_job, load_job, monkeypatch):
    job_id = make_job(stage=JobStage.ANALYZING_STRIDE.value, percentage=45)

    def failing_reset(tracker, message="Analysis queued"):
        tracker.stage = JobStage.WAITING
        raise StagePersistenceFailure("disk full")

    monkeypatch.setattr(ProgressTracker, "reset", failing_reset)

    with pytest.raises(StagePersistenceFailure):
        _processor(session_factory, channel, settings).process(job_id)

    job = load_job(job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.error == "disk full"
    assert job.percentage == 0
    assert published[-1].status == JobStatus.FAILED
