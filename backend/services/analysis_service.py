# backend/services/analysis_service.py
"""
Traffic video analysis service

Entry point used by the API layer. Wires the frame sampler, the analysis
pipeline and the Gemini analyzer together, and tracks background jobs so
the presentation layer can poll progress.
"""

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from config import Settings, get_settings
from errors import (
    EmptyFramesError,
    InvalidFrameError,
    JobNotFoundError,
    RequestValidationError,
    SamplingError,
    TrafficLensError,
    UploadTooLargeError,
)
from integrations.gemini_client import GeminiTrafficAnalyzer
from models.analysis import AnalysisResult
from models.pipeline import AnalysisRequest, Frame, PipelineRun
from services.analysis_pipeline import AnalysisPipeline, TrafficAnalyzer
from services.frame_sampler import FrameSampler, open_video

logger = logging.getLogger(__name__)

MAX_TRACKED_JOBS = 100


@dataclass
class AnalysisJob:
    """Background pipeline run and the task executing it"""
    run: PipelineRun
    task: "asyncio.Task[None]"


class VideoAnalysisService:
    """
    Service for analyzing traffic videos.

    Supports two inputs: frames already sampled by a client
    (``submit_frames``) and whole video files sampled server-side
    (``analyze_video_file`` / ``start_job``).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        analyzer: Optional[TrafficAnalyzer] = None,
        sampler: Optional[FrameSampler] = None,
    ):
        self.settings = settings or get_settings()
        self.analyzer = analyzer or GeminiTrafficAnalyzer.from_settings(self.settings)
        self.sampler = sampler or FrameSampler(jpeg_quality=self.settings.jpeg_quality)
        self.pipeline = AnalysisPipeline(
            sampler=self.sampler,
            analyzer=self.analyzer,
            frame_count=self.settings.frame_count,
            stage_dwell_seconds=self.settings.stage_dwell_seconds,
        )
        self._jobs: Dict[str, AnalysisJob] = {}

    # ---- Client-sampled frames ----

    async def submit_frames(
        self,
        frames: Optional[List[str]],
        file_name: Optional[str] = None,
        file_size: Optional[float] = None,
    ) -> AnalysisResult:
        """
        Analyze base64-encoded frames sampled by the client.

        Raises:
            EmptyFramesError: No frames (before any remote call)
            InvalidFrameError: A frame is not valid base64 image data
            AdapterError: Remote analysis failed
        """
        if not frames:
            raise EmptyFramesError()

        decoded: List[Frame] = []
        for index, value in enumerate(frames):
            if not isinstance(value, str):
                raise InvalidFrameError(index, "expected a base64 string")
            try:
                decoded.append(Frame.from_base64(value))
            except ValueError as e:
                raise InvalidFrameError(index, str(e))

        request = AnalysisRequest.build(
            decoded,
            source_label=file_name or "video",
            file_size=int(file_size) if file_size else None,
        )
        logger.info(f"Analysis request for {request.source_label} ({len(decoded)} frames)")
        return await self.analyzer.analyze(request)

    # ---- Server-side sampling ----

    def validate_upload(self, content_type: Optional[str], size_bytes: int) -> None:
        """
        Reject non-video uploads and uploads over the size ceiling.

        Raises:
            RequestValidationError: Not a video
            UploadTooLargeError: Over ``max_upload_size_mb``
        """
        if not content_type or not content_type.startswith("video/"):
            raise RequestValidationError(
                "Please upload a valid video file",
                field="file",
                value=content_type,
            )
        if size_bytes > self.settings.max_upload_bytes:
            raise UploadTooLargeError(size_bytes, self.settings.max_upload_bytes)

    def store_upload(self, content: bytes, file_name: str) -> Path:
        """Write an uploaded video to a temporary file under ``upload_dir``"""
        upload_dir = Path(self.settings.upload_dir)
        upload_dir.mkdir(parents=True, exist_ok=True)
        suffix = Path(file_name).suffix or ".mp4"
        fd, path = tempfile.mkstemp(suffix=suffix, dir=upload_dir)
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        return Path(path)

    @staticmethod
    def discard_upload(path: Union[str, Path]) -> None:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove upload {path}: {e}")

    async def analyze_video_file(
        self,
        path: Union[str, Path],
        source_label: str,
        file_size: Optional[int] = None,
        run: Optional[PipelineRun] = None,
    ) -> AnalysisResult:
        """
        Run the full pipeline on a video file.

        The decoder is released on every exit path. ``run`` is marked failed
        even when the file can't be opened at all.
        """
        run = run or self.pipeline.create_run(source_label)
        try:
            with open_video(path) as video:
                return await self.pipeline.run(
                    video,
                    source_label=source_label,
                    file_size=file_size,
                    run=run,
                )
        except SamplingError as e:
            run.fail(e)
            raise

    # ---- Background jobs ----

    def start_job(
        self,
        path: Union[str, Path],
        source_label: str,
        file_size: Optional[int] = None,
    ) -> PipelineRun:
        """
        Start a background run; the uploaded file is removed when it ends.

        Must be called from a running event loop.
        """
        run = self.pipeline.create_run(source_label)
        task = asyncio.create_task(self._execute_job(run, path, file_size))
        self._jobs[run.run_id] = AnalysisJob(run=run, task=task)
        self._prune_jobs()
        logger.info(f"Started analysis job {run.run_id} for {source_label}")
        return run

    async def _execute_job(
        self,
        run: PipelineRun,
        path: Union[str, Path],
        file_size: Optional[int],
    ) -> None:
        try:
            await self.analyze_video_file(path, run.source_label, file_size, run=run)
        except TrafficLensError as e:
            # Recorded on the run; pollers read it from there
            logger.warning(f"Analysis job {run.run_id} failed: {type(e).__name__}: {e.message}")
        except Exception as e:
            logger.error(f"Analysis job {run.run_id} crashed: {e}", exc_info=True)
        finally:
            self.discard_upload(path)

    def get_job(self, job_id: str) -> PipelineRun:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job.run

    def cancel_job(self, job_id: str) -> PipelineRun:
        """Signal cancellation; the run becomes failed once the task stops"""
        run = self.get_job(job_id)
        if not run.is_terminal:
            logger.info(f"Cancelling analysis job {job_id}")
            run.cancel()
        return run

    def list_jobs(self) -> List[PipelineRun]:
        return [job.run for job in self._jobs.values()]

    def _prune_jobs(self) -> None:
        """Forget the oldest finished jobs beyond MAX_TRACKED_JOBS"""
        excess = len(self._jobs) - MAX_TRACKED_JOBS
        if excess <= 0:
            return
        finished = [job_id for job_id, job in self._jobs.items() if job.run.is_terminal]
        for job_id in finished[:excess]:
            del self._jobs[job_id]

    async def shutdown(self) -> None:
        """Cancel running jobs and wait for them to release their files"""
        tasks = []
        for job in self._jobs.values():
            if not job.run.is_terminal:
                job.run.cancel()
            tasks.append(job.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


# Global service instance
_analysis_service: Optional[VideoAnalysisService] = None


def get_analysis_service() -> VideoAnalysisService:
    """Get or create analysis service singleton"""
    global _analysis_service
    if _analysis_service is None:
        _analysis_service = VideoAnalysisService()
    return _analysis_service
