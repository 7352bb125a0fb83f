# backend/services/analysis_pipeline.py
"""
Video analysis pipeline

Drives one PipelineRun through the fixed stage sequence:
frame extraction, four presentation-pacing stages, then remote analysis.
Errors are never retried or downgraded: the run is marked failed and the
original typed error is re-raised to the caller.
"""

import asyncio
import logging
from typing import Optional, Protocol

from errors import PipelineCancelledError, TrafficLensError
from models.analysis import AnalysisResult
from models.pipeline import (
    AnalysisRequest,
    PipelineRun,
    Stage,
    STAGE_ORDER,
    VideoResource,
)
from services.frame_sampler import FrameSampler
from services.pipeline_logger import PipelineLogger
from utils.cancellation import CancellationToken, run_cancellable

logger = logging.getLogger(__name__)

PACING_STAGES = [Stage.DENOISING, Stage.UNBLURRING, Stage.CONTRAST, Stage.DETECTION]


class TrafficAnalyzer(Protocol):
    """Anything that turns an AnalysisRequest into an AnalysisResult"""

    model: str
    credential_configured: bool

    async def analyze(
        self,
        request: AnalysisRequest,
        token: Optional[CancellationToken] = None,
    ) -> AnalysisResult:
        ...


class AnalysisPipeline:
    """
    Orchestrates frame sampling and remote analysis for a single video.

    Each call to ``run`` uses its own PipelineRun; no state is shared
    between runs, so several can execute concurrently.
    """

    def __init__(
        self,
        sampler: FrameSampler,
        analyzer: TrafficAnalyzer,
        frame_count: int = 5,
        stage_dwell_seconds: float = 0.6,
    ):
        if frame_count < 1:
            raise ValueError(f"frame_count must be positive, got {frame_count}")
        self.sampler = sampler
        self.analyzer = analyzer
        self.frame_count = frame_count
        self.stage_dwell_seconds = stage_dwell_seconds

    def create_run(self, source_label: str = "video") -> PipelineRun:
        """Create a fresh, idle run (one per submission)"""
        return PipelineRun(source_label=source_label)

    async def run(
        self,
        video: VideoResource,
        source_label: str = "video",
        file_size: Optional[int] = None,
        run: Optional[PipelineRun] = None,
    ) -> AnalysisResult:
        """
        Sample ``video``, advance through every stage and analyze the frames.

        Args:
            video: Caller-owned video resource (not closed here)
            source_label: File name or other label sent to the model
            file_size: Size of the source file in bytes, if known
            run: Idle run to drive; a new one is created if omitted

        Returns:
            Validated AnalysisResult

        Raises:
            SamplingError: Frame extraction failed
            AdapterError: Remote analysis failed
            PipelineCancelledError: The run was cancelled
            PipelineStateError: ``run`` was not idle
        """
        run = run or self.create_run(source_label)
        run.start()

        plog = PipelineLogger(run, model=getattr(self.analyzer, "model", None))
        plog.info(f"Starting analysis of {source_label}")

        try:
            with plog.stage(Stage.EXTRACTION.value) as timing:
                frames = await self.sampler.sample_async(video, self.frame_count, run.token)
                timing.metadata["frames"] = len(frames)
                timing.metadata["bytes"] = sum(f.size_bytes for f in frames)
            plog.report.frame_count = len(frames)
            run.complete_stage(Stage.EXTRACTION)

            for pacing_stage in PACING_STAGES:
                with plog.stage(pacing_stage.value):
                    await self._dwell(run.token, pacing_stage)
                run.complete_stage(pacing_stage)

            request = AnalysisRequest.build(frames, source_label=source_label, file_size=file_size)
            with plog.stage(Stage.INSIGHTS.value):
                result = await self.analyzer.analyze(request, token=run.token)
            run.complete_stage(Stage.INSIGHTS)
            run.succeed(result)

        except TrafficLensError as e:
            run.fail(e)
            plog.finish()
            raise
        except asyncio.CancelledError:
            run.cancel()
            run.fail(PipelineCancelledError(stage=self._current_stage(run)))
            plog.finish()
            raise
        except Exception as e:
            plog.error(f"Unexpected pipeline failure: {type(e).__name__}: {e}")
            run.fail(TrafficLensError(f"Unexpected pipeline failure: {e}", recoverable=False))
            plog.finish()
            raise

        plog.finish()
        return result

    async def _dwell(self, token: CancellationToken, stage: Stage) -> None:
        """Minimum time a pacing stage stays active; cancellable"""
        token.raise_if_cancelled(stage.value)
        if self.stage_dwell_seconds > 0:
            await run_cancellable(asyncio.sleep(self.stage_dwell_seconds), token, stage.value)

    @staticmethod
    def _current_stage(run: PipelineRun) -> str:
        stage = run.next_stage
        return stage.value if stage else STAGE_ORDER[-1].value
