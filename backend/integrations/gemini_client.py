# backend/integrations/gemini_client.py
"""
Google Gemini Vision API Client for traffic video analysis
Calls the generateContent REST endpoint with sampled video frames
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from config import Settings
from errors import (
    EmptyFramesError,
    EmptyModelResponseError,
    InvalidCredentialError,
    MissingCredentialError,
    PayloadTooLargeError,
    TransportError,
    UnparsableModelResponseError,
)
from models.analysis import AnalysisResult, parse_analysis_result
from models.pipeline import AnalysisRequest, Stage
from services.pipeline_logger import log_duration
from utils.cancellation import CancellationToken, run_cancellable
from utils.json_scanner import extract_json_block

logger = logging.getLogger(__name__)

DEFAULT_SETUP_LINK = "https://aistudio.google.com/app/apikeys"
DEFAULT_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MAX_PAYLOAD_BYTES = 15 * 1024 * 1024

# Gemini reports a bad key as 400/403 with one of these markers in the body
INVALID_KEY_MARKERS = ("API_KEY_INVALID", "API key not valid")


class GeminiTrafficAnalyzer:
    """
    Client for analyzing traffic frames with the Gemini Vision API.

    The model reply is treated as untrusted free text: the first balanced
    JSON object is extracted from it and validated against AnalysisResult.
    One outbound request per call, no retries.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gemini-2.0-flash",
        api_base: str = DEFAULT_API_BASE,
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        timeout_seconds: float = 60.0,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        setup_link: str = DEFAULT_SETUP_LINK,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key or ""
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.max_payload_bytes = max_payload_bytes
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.setup_link = setup_link
        self._http_client = http_client

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "GeminiTrafficAnalyzer":
        """Build an analyzer with the credential resolved once from settings"""
        return cls(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            api_base=settings.gemini_api_base,
            max_payload_bytes=settings.max_payload_bytes,
            timeout_seconds=settings.gemini_timeout_seconds,
            temperature=settings.gemini_temperature,
            max_output_tokens=settings.gemini_max_output_tokens,
            setup_link=settings.credential_setup_link,
            http_client=http_client,
        )

    @property
    def credential_configured(self) -> bool:
        return bool(self.api_key.strip())

    @property
    def endpoint(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    async def analyze(
        self,
        request: AnalysisRequest,
        token: Optional[CancellationToken] = None,
    ) -> AnalysisResult:
        """
        Analyze sampled frames and return a validated result.

        Args:
            request: Frames and source metadata
            token: Cancels the in-flight HTTP call when triggered

        Returns:
            Validated AnalysisResult

        Raises:
            EmptyFramesError: No frames (raised before any remote call)
            AdapterError: Classified credential, size, transport or parsing failure
            PipelineCancelledError: If the token is cancelled mid-request
        """
        if not request.frames:
            raise EmptyFramesError()

        if not self.credential_configured:
            logger.error("GEMINI_API_KEY environment variable is not set")
            raise MissingCredentialError("gemini_api_key", setup_link=self.setup_link)

        body = self.serialize(self.build_payload(request))
        size_bytes = len(body)
        if size_bytes > self.max_payload_bytes:
            logger.warning(
                f"Payload for {request.source_label} is {size_bytes / (1024 * 1024):.2f}MB, "
                f"over the {self.max_payload_bytes / (1024 * 1024):.0f}MB limit"
            )
            raise PayloadTooLargeError(size_bytes=size_bytes, limit_bytes=self.max_payload_bytes)

        logger.info(
            f"Calling Gemini Vision API for {request.source_label} "
            f"({len(request.frames)} frames, {size_bytes / (1024 * 1024):.2f}MB)"
        )

        response = await run_cancellable(self._post(body), token, Stage.INSIGHTS.value)
        text = self._classify_response(response)

        logger.debug(f"Gemini response: {text[:500]}...")

        result = self.parse_response_text(text)
        logger.info(
            f"Gemini analysis complete for {request.source_label}: "
            f"{result.vehicleCount} vehicles, density {result.trafficDensity}"
        )
        return result

    # ---- Request building ----

    def build_prompt(self, request: AnalysisRequest) -> str:
        """Build the analysis instruction sent alongside the frames"""

        size_line = ""
        if request.file_size is not None:
            size_line = f"\nVideo file size: {request.file_size / (1024 * 1024):.2f}MB"

        prompt = f"""Analyze these traffic video frames and provide detailed insights. Return a JSON object with the following structure (IMPORTANT: Return ONLY valid JSON, no markdown formatting):
{{
  "vehicleCount": number,
  "trafficDensity": "Light" | "Moderate" | "Heavy" | "Congested",
  "averageSpeed": number,
  "congestionLevel": number (0-100),
  "detectedVehicles": [
    {{ "type": "Car" | "Truck" | "Bus" | "Motorcycle", "count": number, "confidence": number (0-1) }}
  ],
  "flowRate": number,
  "anomalies": [string],
  "processingQuality": "Low" | "Medium" | "High",
  "insights": [string]
}}

Video filename: {request.source_label}
Frames provided: {len(request.frames)}, evenly spaced across the video, in chronological order{size_line}

Analyze the frames carefully and provide realistic traffic metrics. Be specific and detailed in your analysis."""

        return prompt

    def build_payload(self, request: AnalysisRequest) -> Dict[str, Any]:
        """Build the generateContent request body"""
        parts = [{"text": self.build_prompt(request)}]
        for frame in request.frames:
            parts.append({
                "inline_data": {
                    "mime_type": frame.mime_type,
                    "data": frame.to_base64(),
                }
            })

        payload: Dict[str, Any] = {"contents": [{"parts": parts}]}

        generation_config: Dict[str, Any] = {}
        if self.temperature is not None:
            generation_config["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            generation_config["maxOutputTokens"] = self.max_output_tokens
        if generation_config:
            payload["generationConfig"] = generation_config

        return payload

    @staticmethod
    def serialize(payload: Dict[str, Any]) -> bytes:
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")

    # ---- Transport ----

    @log_duration("model_request")
    async def _post(self, body: bytes) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        params = {"key": self.api_key}
        try:
            if self._http_client is not None:
                return await self._http_client.post(
                    self.endpoint, content=body, headers=headers, params=params,
                    timeout=self.timeout_seconds,
                )
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                return await client.post(
                    self.endpoint, content=body, headers=headers, params=params,
                )
        except httpx.TimeoutException:
            logger.error(f"Gemini API timed out after {self.timeout_seconds}s")
            raise TransportError(
                status_code=None,
                message=f"Gemini API request timed out after {self.timeout_seconds}s",
            )
        except httpx.RequestError as e:
            reason = self._redact(str(e)) or type(e).__name__
            logger.error(f"Gemini API request failed: {reason}")
            raise TransportError(
                status_code=None,
                body={"reason": reason},
                message="Could not reach Gemini API",
            )

    def _redact(self, text: str) -> str:
        if self.api_key:
            return text.replace(self.api_key, "***")
        return text

    # ---- Response handling ----

    def _classify_response(self, response: httpx.Response) -> str:
        """
        Map the HTTP response to raw model text or a typed error.

        Raises:
            InvalidCredentialError, PayloadTooLargeError, TransportError,
            EmptyModelResponseError
        """
        if not response.is_success:
            error_body = self._error_body(response)
            logger.error(f"Gemini API error ({response.status_code}): {error_body}")

            if response.status_code == 401 or self._is_invalid_key(response.status_code, error_body):
                raise InvalidCredentialError(response.status_code, setup_link=self.setup_link)

            if response.status_code == 413:
                raise PayloadTooLargeError(remote=True)

            raise TransportError(status_code=response.status_code, body=error_body)

        try:
            data = response.json()
        except ValueError:
            raise EmptyModelResponseError(raw_response=self._redact(response.text))

        text = self._extract_text(data)
        if not text or not text.strip():
            raise EmptyModelResponseError(raw_response=data)
        return text

    def _error_body(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return self._redact(response.text)

    @staticmethod
    def _is_invalid_key(status_code: int, error_body: Any) -> bool:
        if status_code not in (400, 403):
            return False
        body_text = json.dumps(error_body) if not isinstance(error_body, str) else error_body
        return any(marker in body_text for marker in INVALID_KEY_MARKERS)

    @staticmethod
    def _extract_text(data: Any) -> Optional[str]:
        """Return ``candidates[0].content.parts[0].text`` if present"""
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            return None
        return text if isinstance(text, str) else None

    def parse_response_text(self, text: str) -> AnalysisResult:
        """
        Extract and validate the analysis JSON embedded in model text.

        Raises:
            UnparsableModelResponseError: No JSON block, invalid JSON or schema mismatch
        """
        block = extract_json_block(text)
        if block is None:
            logger.error("No JSON object found in Gemini response")
            raise UnparsableModelResponseError(text)

        try:
            data = json.loads(block)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse Gemini response as JSON: {e}")
            raise UnparsableModelResponseError(
                text, reason=f"Gemini returned invalid JSON: {e}"
            )

        try:
            return parse_analysis_result(data)
        except ValidationError as e:
            fields = ", ".join(
                ".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors()
            )
            logger.error(f"Gemini response failed schema validation: {fields}")
            raise UnparsableModelResponseError(
                text, reason=f"Gemini response does not match the analysis schema ({fields})"
            )
