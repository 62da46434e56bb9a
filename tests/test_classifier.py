"""
Tests for AI verdict validation and the Gemini video classifier.

The video CDN is an httpx.MockTransport; the Gemini SDK model is replaced
by a recording stand-in.
"""

from __future__ import annotations

import asyncio
import json
import time
from types import SimpleNamespace

import httpx
import pytest
from google.api_core import exceptions as google_exceptions

from backend.app.core.errors import UpstreamUnavailableError, ValidationError
from backend.app.sos.classifier import GeminiVideoClassifier, extract_json, parse_verdict
from backend.app.sos.models import Confidence, PrimaryService

VIDEO = b"\x00\x00\x00\x18ftypmp42fake-video"
CLIP_URL = "https://cdn.example.com/sos/clip.mp4"


class FakeGenerativeModel:
    """Stands in for genai.GenerativeModel; records each generate_content call."""

    def __init__(self, text="{}", *, error=None, delay=0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.calls = []

    def generate_content(self, contents, request_options=None):
        self.calls.append((contents, request_options))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(text=self.text)


class BlockedResponse:
    @property
    def text(self):
        raise ValueError("response was blocked")


def _classifier(model, *, video=VIDEO, max_video_mb=20.0, timeout_seconds=30.0):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=video, headers={"content-type": "video/mp4"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiVideoClassifier(
        "test-key",
        model="gemini-1.5-flash",
        client=client,
        generative_model=model,
        timeout_seconds=timeout_seconds,
        max_video_mb=max_video_mb,
    )


class TestParseVerdict:

    def test_emergency_verdict(self):
        verdict = parse_verdict({
            "is_emergency": True,
            "primary_service": "Ambulance",
            "confidence": "Medium",
            "reason": "Person collapsed",
        })
        assert verdict.primary_service == PrimaryService.AMBULANCE
        assert verdict.confidence == Confidence.MEDIUM

    def test_non_emergency_nulls_service_and_confidence(self):
        verdict = parse_verdict({
            "is_emergency": False,
            "primary_service": "Police",
            "confidence": "High",
            "reason": "Street festival",
        })
        assert verdict.primary_service is None
        assert verdict.confidence is None

    @pytest.mark.parametrize("data", [
        {"is_emergency": "yes"},
        {"is_emergency": 1, "primary_service": "Police", "confidence": "High"},
        {"is_emergency": True, "primary_service": "Coast Guard", "confidence": "High"},
        {"is_emergency": True, "primary_service": "Police", "confidence": "Certain"},
        {"is_emergency": True, "primary_service": None, "confidence": "High"},
        {"is_emergency": False, "reason": 42},
    ])
    def test_invalid_verdicts(self, data):
        with pytest.raises(ValidationError):
            parse_verdict(data)


class TestExtractJson:

    def test_plain_json(self):
        assert extract_json('{"is_emergency": false}') == {"is_emergency": False}

    def test_fenced_json(self):
        text = '```json\n{"is_emergency": true, "reason": "fire"}\n```'
        assert extract_json(text)["reason"] == "fire"

    def test_json_in_prose(self):
        text = 'Here is my answer: {"is_emergency": false, "reason": "calm"} Hope it helps.'
        assert extract_json(text)["reason"] == "calm"

    def test_no_json(self):
        with pytest.raises(ValueError):
            extract_json("I cannot analyse this video.")

    def test_json_array_rejected(self):
        with pytest.raises(ValueError):
            extract_json("[1, 2, 3]")


class TestGeminiClassifier:

    def test_successful_classification(self):
        verdict = {
            "is_emergency": True,
            "reason": "Flames from a building",
            "primary_service": "Fire Brigade",
            "confidence": "High",
        }
        model = FakeGenerativeModel(json.dumps(verdict))

        result = asyncio.run(_classifier(model).classify(CLIP_URL))

        assert result.is_emergency
        assert result.primary_service == PrimaryService.FIRE_BRIGADE

        (contents, request_options), = model.calls
        prompt, inline = contents
        assert "emergency" in prompt.lower()
        assert inline == {"mime_type": "video/mp4", "data": VIDEO}
        assert request_options == {"timeout": 30.0}

    def test_upstream_error(self):
        model = FakeGenerativeModel(error=google_exceptions.ServiceUnavailable("overloaded"))
        with pytest.raises(UpstreamUnavailableError) as info:
            asyncio.run(_classifier(model).classify(CLIP_URL))
        assert "503" in info.value.message

    def test_deadline_exceeded(self):
        model = FakeGenerativeModel(error=google_exceptions.DeadlineExceeded("slow"))
        with pytest.raises(UpstreamUnavailableError) as info:
            asyncio.run(_classifier(model).classify(CLIP_URL))
        assert "timed out" in info.value.message

    def test_slow_model_times_out(self):
        model = FakeGenerativeModel(delay=0.3)
        with pytest.raises(UpstreamUnavailableError) as info:
            asyncio.run(_classifier(model, timeout_seconds=0.05).classify(CLIP_URL))
        assert "timed out" in info.value.message

    def test_unreadable_reply(self):
        with pytest.raises(UpstreamUnavailableError):
            asyncio.run(_classifier(FakeGenerativeModel("no idea")).classify(CLIP_URL))

    def test_blocked_reply(self):
        model = FakeGenerativeModel()
        model.generate_content = lambda contents, request_options=None: BlockedResponse()
        with pytest.raises(UpstreamUnavailableError) as info:
            asyncio.run(_classifier(model).classify(CLIP_URL))
        assert "No generated content" in info.value.message

    def test_invalid_verdict_from_model(self):
        bad = {"is_emergency": True, "primary_service": "Army", "confidence": "High"}
        with pytest.raises(ValidationError):
            asyncio.run(_classifier(FakeGenerativeModel(json.dumps(bad))).classify(CLIP_URL))

    def test_oversized_video(self):
        model = FakeGenerativeModel()
        classifier = _classifier(model, video=b"x" * 2048, max_video_mb=0.001)  # ~1 KB
        with pytest.raises(ValidationError):
            asyncio.run(classifier.classify(CLIP_URL))
        assert model.calls == []

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            GeminiVideoClassifier("")
