# backend/models/__init__.py
"""
TrafficLens Data Models

This package contains the data models for the video analysis pipeline:
dataclasses for pipeline state and the pydantic analysis result contract.
"""

from .pipeline import (
    # Enums
    Stage,
    RunStatus,
    STAGE_ORDER,

    # Media models
    VideoResource,
    Frame,
    AnalysisRequest,

    # Pipeline
    PipelineRun,
)
from .analysis import (
    AnalysisResult,
    VehicleDetection,
    parse_analysis_result,
)

__all__ = [
    # Enums
    "Stage",
    "RunStatus",
    "STAGE_ORDER",

    # Media models
    "VideoResource",
    "Frame",
    "AnalysisRequest",

    # Pipeline
    "PipelineRun",

    # Result contract
    "AnalysisResult",
    "VehicleDetection",
    "parse_analysis_result",
]
