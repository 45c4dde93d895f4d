"""Tests for the HTTP secondary detector client"""
import httpx

from config import Settings
from models.canonical import ComponentType
from services.secondary_detector import HttpSecondaryDetector


def _detector(handler):
    settings = Settings(secondary_detector_url="http://detector.test/")
    return HttpSecondaryDetector(settings, transport=httpx.MockTransport(handler))


def test_probe_true_when_model_loaded():
    def handler(request):
        assert request.url.path == "/health"
        return httpx.Response(200, json={"status": "healthy", "modelLoaded": True})

    assert _detector(handler).probe() is True


def test_probe_false_when_model_not_loaded():
    detector = _detector(lambda request: httpx.Response(200, json={"status": "healthy", "model_loaded": False}))

    assert detector.probe() is False


def test_probe_false_on_error_status():
    assert _detector(lambda request: httpx.Response(503, text="starting")).probe() is False


def test_probe_false_when_unreachable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert _detector(handler).probe() is False


def test_detect_posts_image_with_threshold():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["confidence"] = request.url.params["confidence"]
        seen["body"] = request.read()
        return httpx.Response(200, json={
            "detections": [{"label": "postgres", "typeCode": "database", "confidence": 0.8}],
            "inferenceTimeMs": 31,
        })

    result = _detector(handler).detect(b"PNGDATA", "image/png", 0.05)

    assert seen["path"] == "/predict"
    assert seen["confidence"] == "0.05"
    assert b"PNGDATA" in seen["body"]
    assert result.available is True
    assert result.inference_time_ms == 31.0
    assert [(d.label, d.type_code) for d in result.detections] == [("postgres", ComponentType.DATABASE)]


def test_detect_timeout_degrades_to_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    result = _detector(handler).detect(b"PNGDATA", "image/png", 0.05)

    assert result.available is False
    assert result.detections == []


def test_detect_error_status_degrades_to_unavailable():
    result = _detector(lambda request: httpx.Response(500, text="CUDA OOM")).detect(b"x", "image/png", 0.05)

    assert result.available is False


def test_detect_garbage_body_degrades_to_unavailable():
    result = _detector(lambda request: httpx.Response(200, text="<html>")).detect(b"x", "image/png", 0.05)

    assert result.available is False


def test_invalid_url_never_raises():
    detector = HttpSecondaryDetector(Settings(secondary_detector_url="http://[::1"))

    assert detector.probe() is False
    assert detector.detect(b"x", "image/png", 0.05).available is False
