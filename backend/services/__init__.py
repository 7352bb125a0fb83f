# backend/services/__init__.py
"""
TrafficLens Business Logic Services

This package contains the service classes for the video analysis pipeline.
The API-facing VideoAnalysisService lives in services.analysis_service.
"""

from .frame_sampler import FrameSampler, VideoSource, open_video
from .analysis_pipeline import AnalysisPipeline, TrafficAnalyzer
from .pipeline_logger import PipelineLogger, RunReport, StageTiming, log_duration

__all__ = [
    # Sampling
    "FrameSampler",
    "VideoSource",
    "open_video",
    # Orchestration
    "AnalysisPipeline",
    "TrafficAnalyzer",
    # Logging
    "PipelineLogger",
    "RunReport",
    "StageTiming",
    "log_duration",
]
