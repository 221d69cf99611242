# tests/test_inference.py
import asyncio
import os
import shutil
import tempfile
import unittest

import httpx

from myopia_api.errors import ImageNotFound, InferenceFailed, InvalidResponse
from myopia_api.inference import (
    InferenceClient,
    backoff_delay,
    parse_detections,
    parse_severity,
)
from myopia_api.models import SeverityLevel

DETECTOR_URL = "http://detector.test/infer"
CLASSIFIER_URL = "http://classifier.test/infer"

GOOD_DETECTIONS = {
    "detections": [
        {"label": "crescent", "confidence": 0.8,
         "boundingBox": {"x": 1, "y": 2, "width": 3, "height": 4}},
    ],
    "output_image": "/static/out-1.png",
}


class ScriptedHandler:
    """MockTransport handler that replays a list of responses or exceptions."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        return step


class InferenceClientTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.image_path = os.path.join(self.tmp, "eye.png")
        with open(self.image_path, "wb") as f:
            f.write(b"\x89PNG fake")
        self.sleeps = []

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    async def _sleep(self, seconds):
        self.sleeps.append(seconds)

    def client(self, handler, max_retries=3):
        return InferenceClient(
            detector_url=DETECTOR_URL,
            classifier_url=CLASSIFIER_URL,
            timeout=2,
            max_retries=max_retries,
            transport=httpx.MockTransport(handler),
            sleep=self._sleep,
        )

    def test_recovers_after_two_server_errors(self):
        handler = ScriptedHandler(
            httpx.Response(503),
            httpx.Response(502),
            httpx.Response(200, json={"severity_level": "high"}),
        )
        result = asyncio.run(self.client(handler).classify(self.image_path))

        self.assertEqual(result.severity_level, SeverityLevel.high)
        self.assertEqual(len(handler.requests), 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_gives_up_after_max_attempts(self):
        handler = ScriptedHandler(httpx.Response(500))
        with self.assertRaises(InferenceFailed) as ctx:
            asyncio.run(self.client(handler).detect(self.image_path))

        self.assertNotIsInstance(ctx.exception, InvalidResponse)
        self.assertEqual(ctx.exception.model_name, "YOLO")
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(len(handler.requests), 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_network_errors_and_timeouts_are_retried(self):
        handler = ScriptedHandler(
            httpx.ConnectError("connection refused"),
            httpx.ReadTimeout("too slow"),
            httpx.Response(200, json=GOOD_DETECTIONS),
        )
        result = asyncio.run(self.client(handler).detect(self.image_path))

        self.assertEqual(len(handler.requests), 3)
        self.assertEqual(result.output_image, "/static/out-1.png")
        self.assertEqual(result.detections[0]["boundingBox"]["width"], 3.0)

    def test_invalid_shape_is_not_retried(self):
        handler = ScriptedHandler(httpx.Response(200, json={"detections": "nope"}))
        with self.assertRaises(InvalidResponse):
            asyncio.run(self.client(handler).detect(self.image_path))
        self.assertEqual(len(handler.requests), 1)
        self.assertEqual(self.sleeps, [])

    def test_non_json_body_is_not_retried(self):
        handler = ScriptedHandler(httpx.Response(200, content=b"<html>oops</html>"))
        with self.assertRaises(InvalidResponse):
            asyncio.run(self.client(handler).classify(self.image_path))
        self.assertEqual(len(handler.requests), 1)

    def test_client_errors_fail_immediately(self):
        handler = ScriptedHandler(httpx.Response(422, json={"detail": "bad image"}))
        with self.assertRaises(InferenceFailed) as ctx:
            asyncio.run(self.client(handler).classify(self.image_path))
        self.assertIn("HTTP 422", ctx.exception.message)
        self.assertEqual(len(handler.requests), 1)

    def test_missing_file_makes_no_request(self):
        handler = ScriptedHandler(httpx.Response(200, json=GOOD_DETECTIONS))
        with self.assertRaises(ImageNotFound):
            asyncio.run(self.client(handler).detect(os.path.join(self.tmp, "missing.png")))
        self.assertEqual(handler.requests, [])

    def test_posts_single_multipart_file_field(self):
        handler = ScriptedHandler(httpx.Response(200, json={"severity_level": "low"}))
        asyncio.run(self.client(handler).classify(self.image_path))

        request = handler.requests[0]
        self.assertEqual(str(request.url), CLASSIFIER_URL)
        self.assertTrue(request.headers["content-type"].startswith("multipart/form-data"))
        body = request.read()
        self.assertIn(b'name="file"; filename="eye.png"', body)
        self.assertIn(b"\x89PNG fake", body)

    def test_single_attempt_configuration(self):
        handler = ScriptedHandler(httpx.Response(503))
        with self.assertRaises(InferenceFailed):
            asyncio.run(self.client(handler, max_retries=1).classify(self.image_path))
        self.assertEqual(len(handler.requests), 1)
        self.assertEqual(self.sleeps, [])


class ParsingTests(unittest.TestCase):
    def test_backoff_is_exponential_and_capped(self):
        self.assertEqual([backoff_delay(n) for n in (1, 2, 3, 4, 5)], [1.0, 2.0, 4.0, 5.0, 5.0])

    def test_detections_may_be_empty_and_output_optional(self):
        result = parse_detections({"detections": []})
        self.assertEqual(result.detections, [])
        self.assertIsNone(result.output_image)

    def test_malformed_detection_rejected(self):
        with self.assertRaises(InvalidResponse):
            parse_detections({"detections": [{"label": "x", "confidence": 2.0,
                                              "boundingBox": {"x": 0, "y": 0, "width": 1, "height": 1}}]})
        with self.assertRaises(InvalidResponse):
            parse_detections([])

    def test_severity_must_be_known_non_empty_string(self):
        self.assertEqual(parse_severity({"severity_level": " Severe "}).severity_level, SeverityLevel.severe)
        for payload in ({}, {"severity_level": ""}, {"severity_level": 3}, {"severity_level": "extreme"}, None):
            with self.assertRaises(InvalidResponse, msg=repr(payload)):
                parse_severity(payload)
