"""
AI video classifier — advisory emergency verdicts from Gemini.

Flow:
    1. Download the report video (≤ CLASSIFIER_MAX_VIDEO_MB)
    2. Send it inline with the two-step emergency prompt through the
       google-generativeai SDK (`GenerativeModel.generate_content`, run in
       a worker thread so the event loop stays free)
    3. Extract the JSON verdict from the first candidate's text
       (plain JSON, ```json fenced``` or embedded in prose)
    4. Validate it into an AiClassification

Timeouts, Google API errors, blocked or empty answers and unreadable replies raise
UpstreamUnavailableError. A reply that parses but breaks the verdict
rules raises ValidationError.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import google.generativeai as genai
import httpx
from google.api_core import exceptions as google_exceptions

from backend.app.core.errors import UpstreamUnavailableError, ValidationError
from backend.app.sos.models import AiClassification, Confidence, PrimaryService

logger = logging.getLogger(__name__)

GENERATION_CONFIG = genai.GenerationConfig(
    temperature=0.1,
    top_k=1,
    top_p=1,
    max_output_tokens=500,
    response_mime_type="application/json",
)

EMERGENCY_ANALYSIS_PROMPT = """Analyze the provided video and perform a two-step emergency assessment.

First, determine if the video shows a real-world, immediate emergency (like a traffic accident, fire, violence, or medical crisis).

Second, IF AND ONLY IF it is an emergency, determine the single most critical emergency service required. Choose one from: ["Police", "Ambulance", "Fire Brigade"].

Respond ONLY with a single valid JSON object following this exact structure. If "is_emergency" is false, the "primary_service" and "confidence" fields MUST be null.

{
  "is_emergency": boolean,
  "reason": "A brief one-sentence explanation for your decision.",
  "primary_service": "Your choice from the list OR null",
  "confidence": "High | Medium | Low OR null"
}"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


# ═══════════════════════════════════════════════════════════════════════════
# Verdict Validation
# ═══════════════════════════════════════════════════════════════════════════

def parse_verdict(data: Mapping[str, Any]) -> AiClassification:
    """
    Validate a raw verdict mapping.

    is_emergency must be a real bool. When true, primary_service and
    confidence must be in their enums; when false both are forced to None.

    >>> parse_verdict({"is_emergency": False, "reason": "Street festival"}).primary_service is None
    True
    """
    is_emergency = data.get("is_emergency")
    if not isinstance(is_emergency, bool):
        raise ValidationError("is_emergency must be a boolean", field="is_emergency")

    reason = data.get("reason") or ""
    if not isinstance(reason, str):
        raise ValidationError("reason must be a string", field="reason")

    if not is_emergency:
        return AiClassification(is_emergency=False, reason=reason)

    service = data.get("primary_service")
    try:
        primary_service = PrimaryService(service)
    except ValueError:
        raise ValidationError(
            "primary_service must be one of "
            + ", ".join(s.value for s in PrimaryService),
            field="primary_service", value=service,
        )

    raw_confidence = data.get("confidence")
    try:
        confidence = Confidence(raw_confidence)
    except ValueError:
        raise ValidationError(
            "confidence must be one of " + ", ".join(c.value for c in Confidence),
            field="confidence", value=raw_confidence,
        )

    return AiClassification(
        is_emergency=True,
        primary_service=primary_service,
        confidence=confidence,
        reason=reason,
    )


def extract_json(text: str) -> Dict[str, Any]:
    """Parse model output that should be JSON but may be wrapped in prose or fences."""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(text)
        if not match:
            raise ValueError("No JSON object in model output")
        parsed = json.loads(match.group(0))
    if not isinstance(parsed, dict):
        raise ValueError("Model output is not a JSON object")
    return parsed


# ═══════════════════════════════════════════════════════════════════════════
# Classifier
# ═══════════════════════════════════════════════════════════════════════════

class IncidentClassifier(ABC):

    @abstractmethod
    async def classify(self, video_url: str) -> AiClassification:
        ...

    async def aclose(self) -> None:
        return None


class GeminiVideoClassifier(IncidentClassifier):
    """
    Gemini-backed classifier. The video is fetched with httpx; the model call
    goes through the SDK. `generative_model` replaces the SDK model in tests.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "gemini-1.5-flash",
        client: Optional[httpx.AsyncClient] = None,
        generative_model: Optional[Any] = None,
        timeout_seconds: float = 30.0,
        max_video_mb: float = 20.0,
    ) -> None:
        if not api_key:
            raise ValueError("Gemini classifier requires an API key")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_video_bytes = int(max_video_mb * 1024 * 1024)
        self._http_client = client
        self._owns_client = client is None
        if generative_model is None:
            genai.configure(api_key=api_key)
            generative_model = genai.GenerativeModel(
                model_name=model, generation_config=GENERATION_CONFIG,
            )
        self._model = generative_model

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
            self._owns_client = True
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def classify(self, video_url: str) -> AiClassification:
        video, mime_type = await self._download(video_url)
        text = await self._generate(video, mime_type)
        try:
            verdict = extract_json(text)
        except ValueError as e:
            raise UpstreamUnavailableError("gemini", f"Unreadable verdict: {e}") from e

        classification = parse_verdict(verdict)
        logger.info(
            "Gemini verdict: emergency=%s service=%s confidence=%s",
            classification.is_emergency,
            classification.primary_service.value if classification.primary_service else None,
            classification.confidence.value if classification.confidence else None,
        )
        return classification

    async def _download(self, video_url: str) -> tuple[bytes, str]:
        client = await self._get_client()
        try:
            async with client.stream("GET", video_url, timeout=self.timeout_seconds) as response:
                response.raise_for_status()
                mime_type = response.headers.get("content-type", "video/mp4").split(";")[0]
                chunks = []
                size = 0
                async for chunk in response.aiter_bytes():
                    size += len(chunk)
                    if size > self.max_video_bytes:
                        raise ValidationError(
                            f"Video too large for analysis (> {self.max_video_bytes // (1024 * 1024)} MB)",
                            field="video_url",
                        )
                    chunks.append(chunk)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError("video", "Download timed out") from e
        except httpx.HTTPStatusError as e:
            raise UpstreamUnavailableError(
                "video", f"HTTP {e.response.status_code}",
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError("video", str(e) or type(e).__name__) from e

        if not mime_type.startswith("video/"):
            mime_type = "video/mp4"
        return b"".join(chunks), mime_type

    async def _generate(self, video: bytes, mime_type: str) -> str:
        contents = [EMERGENCY_ANALYSIS_PROMPT, {"mime_type": mime_type, "data": video}]
        try:
            # The SDK call is blocking
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self._model.generate_content,
                    contents,
                    request_options={"timeout": self.timeout_seconds},
                ),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, google_exceptions.DeadlineExceeded) as e:
            raise UpstreamUnavailableError("gemini", "Request timed out") from e
        except google_exceptions.GoogleAPICallError as e:
            status = f"HTTP {e.code}" if e.code else type(e).__name__
            raise UpstreamUnavailableError("gemini", status) from e
        except google_exceptions.GoogleAPIError as e:
            raise UpstreamUnavailableError("gemini", str(e) or type(e).__name__) from e

        try:
            # .text raises ValueError when the answer was blocked or empty
            text = response.text
        except ValueError as e:
            raise UpstreamUnavailableError("gemini", "No generated content in response") from e
        if not text:
            raise UpstreamUnavailableError("gemini", "No generated content in response")
        return text
