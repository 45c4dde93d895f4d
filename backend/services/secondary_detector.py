"""
Secondary component detector - HTTP client for the object detection microservice

The model runs in its own service; we only probe its health and post images.
Fast and calibrated, but it only knows labels and type codes. Every failure
here degrades to "no secondary detections", never to a failed job.
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from config import Settings, get_settings
from models.canonical import SecondaryDetectionResult
from services.capability_schemas import parse_secondary_prediction
from services.errors import DetectorUnavailable, MalformedResponse

logger = logging.getLogger(__name__)


class SecondaryDetector(ABC):
    """Contract for the secondary detector"""

    @abstractmethod
    def probe(self) -> bool:
        """True if the detector is up and has a model loaded; never raises"""

    @abstractmethod
    def detect(self, image: bytes, mime_type: str, confidence_threshold: float) -> SecondaryDetectionResult:
        """Run detection; never raises, returns an unavailable result on failure"""


class HttpSecondaryDetector(SecondaryDetector):
    """Secondary detector reached over HTTP (GET /health, POST /predict)"""

    def __init__(self, settings: Settings = None, transport: Optional[httpx.BaseTransport] = None):
        settings = settings or get_settings()
        self.base_url = settings.secondary_detector_url.rstrip("/")
        self.probe_timeout = settings.secondary_probe_timeout
        self.predict_timeout = settings.secondary_predict_timeout
        self.transport = transport
        logger.info(f"Secondary detector URL: {self.base_url}")

    def _client(self, timeout: float) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=timeout, transport=self.transport)

    def probe(self) -> bool:
        try:
            self._check_health()
            return True
        except DetectorUnavailable as e:
            logger.warning(f"Secondary detector not available: {e}")
            return False

    def _check_health(self) -> None:
        try:
            with self._client(self.probe_timeout) as client:
                response = client.get("/health")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise DetectorUnavailable(str(e) or type(e).__name__) from e

        if response.status_code != 200:
            raise DetectorUnavailable(f"health returned {response.status_code}")
        try:
            health = response.json()
        except ValueError as e:
            raise DetectorUnavailable("health response is not JSON") from e
        if not isinstance(health, dict) or not health.get("modelLoaded", health.get("model_loaded", False)):
            raise DetectorUnavailable("model not loaded")

    def detect(self, image: bytes, mime_type: str, confidence_threshold: float) -> SecondaryDetectionResult:
        extension = mime_type.split("/")[-1] if "/" in mime_type else "png"
        try:
            logger.info("Sending image to secondary detector...")
            with self._client(self.predict_timeout) as client:
                response = client.post(
                    "/predict",
                    params={"confidence": confidence_threshold},
                    files={"file": (f"image.{extension}", image, mime_type)},
                )
            if response.status_code != 200:
                logger.error(f"Secondary detector error: {response.status_code} - {response.text[:200]}")
                return SecondaryDetectionResult.unavailable()

            result = parse_secondary_prediction(response.content)
            logger.info(
                f"Secondary detector found {len(result.detections)} components "
                f"in {result.inference_time_ms}ms"
            )
            return result
        except (httpx.HTTPError, httpx.InvalidURL, MalformedResponse) as e:
            logger.warning(f"Secondary detector failed: {e}")
            return SecondaryDetectionResult.unavailable()
