# backend/errors.py
"""
TrafficLens Exception Hierarchy

Custom exceptions for the video analysis pipeline with recovery hints.
Every error knows the HTTP status it maps to, so the API layer can
forward it unchanged.
"""

from enum import Enum
from typing import Any, Dict, Optional


RAW_RESPONSE_PREVIEW_CHARS = 2000


class TrafficLensError(Exception):
    """Base exception for all TrafficLens errors"""

    http_status: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
        recovery_hint: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        self.recovery_hint = recovery_hint

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "error": self.__class__.__name__,
            "message": self.message,
            "recoverable": self.recoverable,
        }
        if self.details:
            result["details"] = self.details
        if self.recovery_hint:
            result["recoveryHint"] = self.recovery_hint
        return result

    def to_response(self) -> Dict[str, Any]:
        """Body returned to HTTP clients: ``{"error": ..., ...}``"""
        body: Dict[str, Any] = {"error": self.message, "type": self.__class__.__name__}
        if self.recovery_hint:
            body["recoveryHint"] = self.recovery_hint
        return body


# =============================================================================
# PIPELINE ERRORS
# =============================================================================

class PipelineError(TrafficLensError):
    """Base exception for pipeline errors"""

    def __init__(
        self,
        message: str,
        stage: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
        recovery_hint: Optional[str] = None
    ):
        super().__init__(message, details, recoverable, recovery_hint)
        self.stage = stage

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["stage"] = self.stage
        return result


class SamplingError(PipelineError):
    """Frame extraction from the video failed"""

    http_status = 422

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recovery_hint: str = "Check that the file is a playable video and try again"
    ):
        super().__init__(
            message=message,
            stage="extraction",
            details=details,
            recoverable=True,
            recovery_hint=recovery_hint
        )


class PipelineCancelledError(PipelineError):
    """Run was cancelled before it finished"""

    http_status = 409

    def __init__(self, stage: str = "unknown"):
        super().__init__(
            message=f"Analysis cancelled during stage '{stage}'",
            stage=stage,
            recoverable=True,
            recovery_hint="Submit the video again to start a new analysis"
        )


class PipelineStateError(TrafficLensError):
    """Illegal transition on a pipeline run"""

    http_status = 409

    def __init__(self, message: str, run_id: Optional[str] = None):
        super().__init__(
            message=message,
            details={"runId": run_id} if run_id else None,
            recoverable=False,
            recovery_hint="Start a new run instead of reusing a finished one"
        )


class JobNotFoundError(TrafficLensError):
    """No analysis job with the given id"""

    http_status = 404

    def __init__(self, job_id: str):
        super().__init__(
            message=f"Analysis job not found: {job_id}",
            details={"jobId": job_id},
            recoverable=False,
        )


# =============================================================================
# ADAPTER ERRORS
# =============================================================================

class AdapterErrorKind(str, Enum):
    """Classified failure kinds of the model adapter"""
    MISSING_CREDENTIAL = "MissingCredential"
    INVALID_CREDENTIAL = "InvalidCredential"
    PAYLOAD_TOO_LARGE = "PayloadTooLarge"
    TRANSPORT_FAILURE = "TransportFailure"
    EMPTY_MODEL_RESPONSE = "EmptyModelResponse"
    UNPARSABLE_MODEL_RESPONSE = "UnparsableModelResponse"


class AdapterError(TrafficLensError):
    """Base exception for remote model adapter failures"""

    kind: AdapterErrorKind

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
        recovery_hint: Optional[str] = None,
        setup_link: Optional[str] = None,
    ):
        super().__init__(message, details, recoverable, recovery_hint)
        self.setup_link = setup_link

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["kind"] = self.kind.value
        if self.setup_link:
            result["setupLink"] = self.setup_link
        return result

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        body["kind"] = self.kind.value
        if self.setup_link:
            body["setupLink"] = self.setup_link
        return body


class MissingCredentialError(AdapterError):
    """Model API key not configured"""

    kind = AdapterErrorKind.MISSING_CREDENTIAL
    http_status = 500

    def __init__(self, setting: str, setup_link: Optional[str] = None):
        super().__init__(
            message=(
                f"{setting.upper()} environment variable is not configured. "
                "Please add your Gemini API key to the environment or .env file."
            ),
            details={"setting": setting.upper()},
            recoverable=False,
            recovery_hint=f"Add {setting.upper()} to .env file",
            setup_link=setup_link,
        )


class InvalidCredentialError(AdapterError):
    """Model API rejected the configured key"""

    kind = AdapterErrorKind.INVALID_CREDENTIAL
    http_status = 401

    def __init__(self, status_code: int, setup_link: Optional[str] = None):
        super().__init__(
            message="Invalid Gemini API key. Please check your API key configuration.",
            details={"statusCode": status_code},
            recoverable=False,
            recovery_hint="Check API key configuration in .env file",
            setup_link=setup_link,
        )


class PayloadTooLargeError(AdapterError):
    """Request exceeds the local ceiling, or was rejected as too large remotely"""

    kind = AdapterErrorKind.PAYLOAD_TOO_LARGE
    http_status = 413

    def __init__(
        self,
        size_bytes: Optional[int] = None,
        limit_bytes: Optional[int] = None,
        remote: bool = False,
    ):
        if remote:
            message = "Request payload too large for Gemini API. Please use a smaller video file."
        else:
            message = (
                f"Payload too large ({size_bytes / (1024 * 1024):.2f}MB). "
                "Please upload a smaller video or reduce quality."
            )
        super().__init__(
            message=message,
            details={"sizeBytes": size_bytes, "limitBytes": limit_bytes, "remote": remote},
            recoverable=True,
            recovery_hint="Use a shorter video, fewer frames or a lower JPEG quality",
        )
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        self.remote = remote

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        if self.size_bytes is not None:
            body["sizeBytes"] = self.size_bytes
        return body


class TransportError(AdapterError):
    """Remote model call failed (non-success status or no response at all)"""

    kind = AdapterErrorKind.TRANSPORT_FAILURE

    def __init__(
        self,
        status_code: Optional[int],
        body: Any = None,
        message: str = "Failed to analyze video with Gemini API",
    ):
        super().__init__(
            message=message,
            details={"statusCode": status_code, "body": body},
            recoverable=True,
            recovery_hint="The model service may be unavailable; try again later",
        )
        self.status_code = status_code
        self.body = body

    @property
    def http_status(self) -> int:  # type: ignore[override]
        if self.status_code is not None and 400 <= self.status_code <= 599:
            return self.status_code
        return 502

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        if self.body is not None:
            body["details"] = self.body
        return body


class EmptyModelResponseError(AdapterError):
    """Model replied successfully but without any text"""

    kind = AdapterErrorKind.EMPTY_MODEL_RESPONSE
    http_status = 500

    def __init__(self, raw_response: Any = None):
        preview = str(raw_response)[:RAW_RESPONSE_PREVIEW_CHARS] if raw_response is not None else None
        super().__init__(
            message="No content in Gemini response",
            details={"rawResponse": preview},
            recovery_hint="The model returned no text; try again or use a different video",
        )
        self.raw_response = preview


class UnparsableModelResponseError(AdapterError):
    """Model text did not contain a valid analysis result"""

    kind = AdapterErrorKind.UNPARSABLE_MODEL_RESPONSE
    http_status = 500

    def __init__(
        self,
        raw_response: str,
        reason: str = "Could not parse JSON from Gemini response",
    ):
        preview = raw_response[:RAW_RESPONSE_PREVIEW_CHARS]
        super().__init__(
            message=reason,
            details={"rawResponse": preview},
            recovery_hint="The model output could not be parsed; try again",
        )
        self.raw_response = preview
        self.reason = reason

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        body["response"] = self.raw_response
        return body


# =============================================================================
# VALIDATION ERRORS
# =============================================================================

class RequestValidationError(TrafficLensError):
    """Input validation failed"""

    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            details={"field": field, "value": value, **(details or {})},
            recoverable=True,
            recovery_hint="Check input values and try again"
        )


class EmptyFramesError(RequestValidationError):
    """No frames supplied for analysis"""

    def __init__(self):
        super().__init__(message="No frames provided for analysis", field="frames")


class InvalidFrameError(RequestValidationError):
    """A supplied frame is not decodable image data"""

    def __init__(self, index: int, reason: str):
        super().__init__(
            message=f"Invalid frame at index {index}: {reason}",
            field="frames",
            details={"index": index},
        )
        self.recovery_hint = "Send frames as base64-encoded JPEG data"


class UploadTooLargeError(RequestValidationError):
    """Uploaded video exceeds the upload ceiling"""

    http_status = 413

    def __init__(self, size_bytes: int, limit_bytes: int):
        super().__init__(
            message=(
                f"File size ({size_bytes / (1024 * 1024):.2f}MB) exceeds "
                f"{limit_bytes // (1024 * 1024)}MB limit. Please upload a smaller video."
            ),
            field="file",
            details={"sizeBytes": size_bytes, "limitBytes": limit_bytes},
        )
