# backend/models/pipeline.py
"""
Pipeline Data Models for TrafficLens

Defines the data structures that flow through the video analysis pipeline:
video resources, sampled frames, stages and the per-submission run record.
"""

import base64
import binascii
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from errors import PipelineStateError, TrafficLensError
from utils.cancellation import CancellationToken


SUPPORTED_IMAGE_TYPES = ["image/jpeg", "image/png", "image/webp"]


# =============================================================================
# ENUMS
# =============================================================================

class Stage(str, Enum):
    """Pipeline stages, in the order they complete"""
    EXTRACTION = "extraction"   # Frames sampled from the video
    DENOISING = "denoising"     # Presentation pacing only
    UNBLURRING = "unblurring"   # Presentation pacing only
    CONTRAST = "contrast"       # Presentation pacing only
    DETECTION = "detection"     # Presentation pacing only
    INSIGHTS = "insights"       # Remote model analysis

    @property
    def display_name(self) -> str:
        return STAGE_INFO[self][0]

    @property
    def description(self) -> str:
        return STAGE_INFO[self][1]

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.value,
            "name": self.display_name,
            "description": self.description,
        }


STAGE_INFO: Dict[Stage, Tuple[str, str]] = {
    Stage.EXTRACTION: ("Frame Extraction", "Extracting frames from video..."),
    Stage.DENOISING: ("Denoising", "Reducing noise and artifacts..."),
    Stage.UNBLURRING: ("Motion Deblurring", "Enhancing motion clarity..."),
    Stage.CONTRAST: ("Contrast Enhancement", "Improving visual quality..."),
    Stage.DETECTION: ("Object Detection", "Detecting vehicles and elements..."),
    Stage.INSIGHTS: ("AI Analysis", "Generating traffic insights..."),
}

STAGE_ORDER: List[Stage] = list(Stage)


class RunStatus(str, Enum):
    """Lifecycle of a pipeline run"""
    IDLE = "idle"               # Created, not started
    RUNNING = "running"         # Stages completing
    SUCCEEDED = "succeeded"     # All stages complete, result available
    FAILED = "failed"           # Terminal error recorded


# =============================================================================
# MEDIA MODELS
# =============================================================================

class VideoResource(ABC):
    """
    Seekable video source.

    Owned by the caller; samplers only move its playback position.
    """

    @property
    @abstractmethod
    def duration(self) -> Optional[float]:
        """Duration in seconds, or None if the container does not report one"""
        pass

    @property
    @abstractmethod
    def width(self) -> int:
        pass

    @property
    @abstractmethod
    def height(self) -> int:
        pass

    @abstractmethod
    def seek(self, seconds: float) -> bool:
        """Move the playback position. Returns False if the seek failed."""
        pass

    @abstractmethod
    def read(self) -> Optional[Any]:
        """Decode the picture at the current position (BGR array) or None"""
        pass


@dataclass(frozen=True)
class Frame:
    """Encoded still image sampled from a video"""
    data: bytes
    mime_type: str = "image/jpeg"
    timestamp: Optional[float] = None  # Seconds from start; None if unknown
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    @classmethod
    def from_base64(cls, value: str, timestamp: Optional[float] = None) -> "Frame":
        """
        Build a frame from raw base64 or a ``data:image/...;base64,`` URL.

        Raises:
            ValueError: If the value is not valid base64 image data
        """
        mime_type = "image/jpeg"
        payload = value

        if "base64," in value:
            prefix, payload = value.split("base64,", 1)
            if prefix.startswith("data:"):
                type_part = prefix[5:].split(";")[0]
                if type_part:
                    mime_type = type_part
            if mime_type not in SUPPORTED_IMAGE_TYPES:
                raise ValueError(f"Unsupported media type {mime_type}")

        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 data: {e}")

        if not data:
            raise ValueError("Empty image data")

        return cls(data=data, mime_type=mime_type, timestamp=timestamp)


@dataclass(frozen=True)
class AnalysisRequest:
    """Frames plus metadata sent to the remote model"""
    frames: Tuple[Frame, ...]
    source_label: str = "video"
    file_size: Optional[int] = None

    @classmethod
    def build(
        cls,
        frames: List[Frame],
        source_label: str = "video",
        file_size: Optional[int] = None,
    ) -> "AnalysisRequest":
        return cls(frames=tuple(frames), source_label=source_label, file_size=file_size)


# =============================================================================
# PIPELINE RUN
# =============================================================================

RunListener = Callable[["PipelineRun"], None]


@dataclass
class PipelineRun:
    """
    One end-to-end attempt to analyze a single video submission.

    ``completed_stages`` is always a prefix of STAGE_ORDER. Once the run is
    succeeded or failed it is terminal; retrying means creating a new run.
    """

    source_label: str = "video"
    run_id: str = field(default_factory=lambda: str(uuid4()))
    status: RunStatus = RunStatus.IDLE
    completed_stages: List[Stage] = field(default_factory=list)
    terminal_error: Optional[TrafficLensError] = None
    result: Optional[Any] = None  # AnalysisResult once succeeded
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    _listeners: List[RunListener] = field(default_factory=list, repr=False, init=False)

    # ---- Derived state ----

    @property
    def progress_percent(self) -> float:
        return 100.0 * len(self.completed_stages) / len(STAGE_ORDER)

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.SUCCEEDED, RunStatus.FAILED)

    @property
    def next_stage(self) -> Optional[Stage]:
        if len(self.completed_stages) >= len(STAGE_ORDER):
            return None
        return STAGE_ORDER[len(self.completed_stages)]

    @property
    def active_stage(self) -> Optional[Stage]:
        """Stage currently in progress, if the run is running"""
        if self.status != RunStatus.RUNNING:
            return None
        return self.next_stage

    # ---- Transitions ----

    def add_listener(self, listener: RunListener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def start(self) -> None:
        if self.status != RunStatus.IDLE:
            raise PipelineStateError(
                f"Run {self.run_id} cannot start from status '{self.status.value}'",
                run_id=self.run_id,
            )
        self.status = RunStatus.RUNNING
        self.started_at = datetime.utcnow()
        self._notify()

    def complete_stage(self, stage: Stage) -> None:
        """Mark the next stage complete; stages can't be skipped or reordered"""
        if self.status != RunStatus.RUNNING:
            raise PipelineStateError(
                f"Run {self.run_id} is not running (status '{self.status.value}')",
                run_id=self.run_id,
            )
        expected = self.next_stage
        if stage != expected:
            raise PipelineStateError(
                f"Stage '{stage.value}' completed out of order; "
                f"expected '{expected.value if expected else None}'",
                run_id=self.run_id,
            )
        self.completed_stages.append(stage)
        self._notify()

    def succeed(self, result: Any) -> None:
        if self.status != RunStatus.RUNNING or self.next_stage is not None:
            raise PipelineStateError(
                f"Run {self.run_id} cannot succeed with "
                f"{len(self.completed_stages)}/{len(STAGE_ORDER)} stages complete",
                run_id=self.run_id,
            )
        self.result = result
        self.status = RunStatus.SUCCEEDED
        self.ended_at = datetime.utcnow()
        self._notify()

    def fail(self, error: TrafficLensError) -> bool:
        """
        Record a terminal error.

        Returns:
            False if the run was already terminal (the error is dropped)
        """
        if self.is_terminal:
            return False
        self.terminal_error = error
        self.status = RunStatus.FAILED
        self.ended_at = datetime.utcnow()
        self._notify()
        return True

    def cancel(self) -> None:
        """Signal cancellation to whatever is executing this run"""
        self.token.cancel()

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "jobId": self.run_id,
            "sourceLabel": self.source_label,
            "status": self.status.value,
            "progress": round(self.progress_percent, 2),
            "completedStages": [s.value for s in self.completed_stages],
            "activeStage": self.active_stage.value if self.active_stage else None,
            "stages": [s.to_dict() for s in STAGE_ORDER],
            "createdAt": self.created_at.isoformat() + "Z",
            "startedAt": self.started_at.isoformat() + "Z" if self.started_at else None,
            "endedAt": self.ended_at.isoformat() + "Z" if self.ended_at else None,
        }
        if self.terminal_error is not None:
            result["error"] = self.terminal_error.to_response()
        if self.result is not None:
            result["result"] = self.result.model_dump(mode="json")
        return result
