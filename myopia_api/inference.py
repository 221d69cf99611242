# backend/myopia_api/inference.py
"""HTTP client for the two external retinal models.

The detector returns bounding-box findings (and optionally a rendered output
image), the classifier a myopia severity level. Both receive the stored
original as a multipart upload in a single ``file`` field.
"""
import asyncio
import logging
import mimetypes
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from . import config
from .errors import ImageNotFound, InferenceFailed, InvalidResponse
from .models import SeverityLevel
from .schemas import Detection

logger = logging.getLogger(__name__)

DETECTOR = "YOLO"
CLASSIFIER = "ResNet"

BACKOFF_BASE = 1.0
BACKOFF_FACTOR = 2.0
BACKOFF_MAX = 5.0


@dataclass
class DetectionResult:
    detections: List[Dict[str, Any]] = field(default_factory=list)
    output_image: Optional[str] = None


@dataclass
class ClassificationResult:
    severity_level: SeverityLevel


class RetryableError(Exception):
    """A failed attempt that may succeed if repeated (network, timeout, 5xx)."""


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after failed attempt number `attempt` (1-based)."""
    return min(BACKOFF_BASE * BACKOFF_FACTOR ** (attempt - 1), BACKOFF_MAX)


def parse_detections(payload: Any) -> DetectionResult:
    if not isinstance(payload, dict) or not isinstance(payload.get("detections"), list):
        raise InvalidResponse(DETECTOR, "missing or invalid detections")
    try:
        detections = [
            Detection.model_validate(item).model_dump(by_alias=True)
            for item in payload["detections"]
        ]
    except ValidationError as exc:
        raise InvalidResponse(DETECTOR, f"malformed detection: {exc.errors()[0]['msg']}") from exc

    output_image = payload.get("output_image")
    if output_image is not None and not isinstance(output_image, str):
        output_image = None
    return DetectionResult(detections=detections, output_image=output_image or None)


def parse_severity(payload: Any) -> ClassificationResult:
    level = payload.get("severity_level") if isinstance(payload, dict) else None
    if not isinstance(level, str) or not level.strip():
        raise InvalidResponse(CLASSIFIER, "missing or invalid severity_level")
    try:
        return ClassificationResult(severity_level=SeverityLevel(level.strip().lower()))
    except ValueError as exc:
        raise InvalidResponse(CLASSIFIER, f"unknown severity_level {level!r}") from exc


class InferenceClient:
    def __init__(
        self,
        detector_url: str = config.YOLO_ENDPOINT,
        classifier_url: str = config.RESNET_ENDPOINT,
        timeout: float = config.INFERENCE_TIMEOUT,
        max_retries: int = config.INFERENCE_MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.detector_url = detector_url
        self.classifier_url = classifier_url
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self._transport = transport
        self._sleep = sleep

    async def detect(self, image_path: str) -> DetectionResult:
        payload = await self._call(DETECTOR, self.detector_url, image_path)
        try:
            result = parse_detections(payload)
        except InvalidResponse as exc:
            logger.error("Invalid %s response for %s: %s", DETECTOR, image_path, exc.cause)
            raise
        logger.info("%s inference completed for image: %s (%d detections)",
                    DETECTOR, image_path, len(result.detections))
        return result

    async def classify(self, image_path: str) -> ClassificationResult:
        payload = await self._call(CLASSIFIER, self.classifier_url, image_path)
        try:
            result = parse_severity(payload)
        except InvalidResponse as exc:
            logger.error("Invalid %s response for %s: %s", CLASSIFIER, image_path, exc.cause)
            raise
        logger.info("%s inference completed for image: %s (severity=%s)",
                    CLASSIFIER, image_path, result.severity_level.value)
        return result

    async def _call(self, model_name: str, url: str, image_path: str) -> Any:
        logger.info("Starting %s inference for image: %s", model_name, image_path)
        if not os.path.isfile(image_path):
            logger.error("Image file not found: %s", image_path)
            raise ImageNotFound(image_path)

        with open(image_path, "rb") as f:
            content = f.read()
        filename = os.path.basename(image_path)
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"

        last_error: Optional[Exception] = None
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(1, self.max_retries + 1):
                try:
                    return await self._attempt(client, model_name, url, filename, content, content_type)
                except RetryableError as exc:
                    last_error = exc
                    logger.warning("%s attempt %d/%d failed: %s",
                                   model_name, attempt, self.max_retries, exc)
                except InferenceFailed:
                    raise
                except httpx.HTTPStatusError as exc:
                    logger.error("%s attempt %d rejected: %s", model_name, attempt, exc)
                    raise InferenceFailed(model_name, f"HTTP {exc.response.status_code}") from exc
                if attempt < self.max_retries:
                    delay = backoff_delay(attempt)
                    logger.info("%s retry attempt %d in %.1fs", model_name, attempt + 1, delay)
                    await self._sleep(delay)

        logger.error("%s inference failed for %s after %d attempts: %s",
                     model_name, image_path, self.max_retries, last_error)
        raise InferenceFailed(model_name, last_error)

    async def _attempt(self, client: httpx.AsyncClient, model_name: str, url: str, filename: str,
                       content: bytes, content_type: str) -> Any:
        try:
            response = await client.post(url, files={"file": (filename, content, content_type)})
        except httpx.TimeoutException as exc:
            raise RetryableError(f"timed out: {exc!r}") from exc
        except httpx.TransportError as exc:
            raise RetryableError(f"network error: {exc!r}") from exc

        if response.status_code >= 500:
            raise RetryableError(f"server error HTTP {response.status_code}")
        response.raise_for_status()
        try:
            return response.json()
        except ValueError as exc:
            raise InvalidResponse(model_name, "response body is not JSON") from exc


def get_inference_client() -> InferenceClient:
    return InferenceClient()
