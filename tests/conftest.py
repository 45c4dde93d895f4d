"""Pytest configuration and shared fakes for the threat modeler backend."""
import pytest

from config import Settings
from database import create_db_engine, create_session_factory
from models.analysis_job import AnalysisJob
from models.canonical import (
    ComponentType,
    DetectedComponent,
    DetectedConnection,
    PrimaryDetectionResult,
    SecondaryDetection,
    SecondaryDetectionResult,
    Severity,
    ThreatCategory,
    ThreatFinding,
)
from services.primary_detector import PrimaryDetector
from services.progress_channel import ProgressChannel
from services.secondary_detector import SecondaryDetector
from services.threat_analyzer import ThreatAnalyzer


class FakePrimaryDetector(PrimaryDetector):
    def __init__(self, result=None, error=None):
        self.result = result or PrimaryDetectionResult.empty()
        self.error = error
        self.calls = []

    def detect(self, image, mime_type, language):
        self.calls.append((image, mime_type, language))
        if self.error:
            raise self.error
        return self.result


class FakeSecondaryDetector(SecondaryDetector):
    def __init__(self, available=True, detections=None, inference_time_ms=12.5):
        self.available = available
        self.detections = detections or []
        self.inference_time_ms = inference_time_ms
        self.probe_calls = 0
        self.detect_calls = []

    def probe(self):
        self.probe_calls += 1
        return self.available

    def detect(self, image, mime_type, confidence_threshold):
        self.detect_calls.append(confidence_threshold)
        return SecondaryDetectionResult(
            available=True,
            detections=list(self.detections),
            inference_time_ms=self.inference_time_ms,
        )


class FakeThreatAnalyzer(ThreatAnalyzer):
    """Returns canned findings; per-component overrides may be lists or exceptions"""

    def __init__(self, overrides=None, default=None):
        self.overrides = overrides or {}
        self.default = default
        self.calls = []

    def analyze(self, component, connection_summary, context):
        self.calls.append((component.id, connection_summary, context))
        outcome = self.overrides.get(component.id)
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return list(outcome)
        if self.default is not None:
            return list(self.default)
        return [finding(Severity.HIGH), finding(Severity.LOW, ThreatCategory.TAMPERING)]


def finding(severity=Severity.MEDIUM, category=ThreatCategory.SPOOFING, countermeasures=None):
    return ThreatFinding(
        category=category,
        description=f"{category.value} threat",
        severity=severity,
        countermeasures=countermeasures if countermeasures is not None else ["Enable MFA"],
    )


def component(component_id, component_type=ComponentType.SERVER, name=None):
    return DetectedComponent(
        id=component_id,
        name=name or component_id.replace("-", " ").title(),
        type=component_type,
        description=f"{component_id} component",
    )


def detection(type_code, confidence, label=None):
    return SecondaryDetection(
        label=label or type_code.value,
        type_code=type_code,
        confidence=confidence,
    )


def sample_primary():
    return PrimaryDetectionResult(
        provider="aws",
        mitigations=["AWS WAF", "KMS"],
        components=[
            component("users", ComponentType.USER),
            component("alb", ComponentType.LOAD_BALANCER),
            component("app", ComponentType.SERVER),
            component("db", ComponentType.DATABASE),
        ],
        connections=[
            DetectedConnection("users", "alb", "HTTPS", "443", True, "Browser traffic"),
            DetectedConnection("alb", "app", "HTTP", "8080", False, "Forwarded requests"),
            DetectedConnection("app", "db", "TCP", "5432", True, "Queries"),
        ],
    )


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        enable_ai_analysis=False,
        queue_attempts=3,
        queue_backoff_ms=5000,
        progress_poll_interval=0.01,
        queue_poll_interval=0.01,
        max_workers=2,
    )


@pytest.fixture
def session_factory(settings):
    return create_session_factory(create_db_engine(settings.database_url))


@pytest.fixture
def channel():
    return ProgressChannel()


@pytest.fixture
def published(channel):
    """Every snapshot published on the channel, in order"""
    snapshots = []
    channel.add_listener(snapshots.append)
    return snapshots


@pytest.fixture
def make_job(session_factory):
    def _make_job(**fields):
        values = {
            "image_name": "architecture.png",
            "image_data": b"\x89PNG fake image",
            "image_mime_type": "image/png",
            "language": "en-US",
        }
        values.update(fields)
        with session_factory() as db:
            job = AnalysisJob(**values)
            db.add(job)
            db.commit()
            db.refresh(job)
            return job.id

    return _make_job


@pytest.fixture
def load_job(session_factory):
    def _load_job(job_id):
        with session_factory() as db:
            return db.query(AnalysisJob).filter(AnalysisJob.id == job_id).first()

    return _load_job
