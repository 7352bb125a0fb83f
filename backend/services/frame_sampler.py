# backend/services/frame_sampler.py
"""
Frame sampling service

Extracts a fixed number of evenly spaced JPEG frames from a video using
OpenCV. Extraction is all-or-nothing: either every requested frame is
decoded and encoded, or SamplingError is raised and nothing is returned.
"""

import asyncio
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, List, Optional, Union

import cv2
import numpy as np

from errors import SamplingError
from models.pipeline import Frame, Stage, VideoResource
from utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class VideoSource(VideoResource):
    """VideoResource backed by cv2.VideoCapture"""

    def __init__(self, capture: "cv2.VideoCapture", label: str = "video"):
        self._capture = capture
        self.label = label

    @property
    def fps(self) -> float:
        return float(self._capture.get(cv2.CAP_PROP_FPS) or 0.0)

    @property
    def frame_count(self) -> int:
        return int(self._capture.get(cv2.CAP_PROP_FRAME_COUNT) or 0)

    @property
    def duration(self) -> Optional[float]:
        fps = self.fps
        frame_count = self.frame_count
        if not math.isfinite(fps) or fps <= 0 or frame_count <= 0:
            return None
        return frame_count / fps

    @property
    def width(self) -> int:
        return int(self._capture.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)

    @property
    def height(self) -> int:
        return int(self._capture.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)

    def seek(self, seconds: float) -> bool:
        return bool(self._capture.set(cv2.CAP_PROP_POS_MSEC, seconds * 1000.0))

    def read(self) -> Optional[np.ndarray]:
        ret, frame = self._capture.read()
        if not ret or frame is None:
            return None
        return frame

    def release(self) -> None:
        self._capture.release()


@contextmanager
def open_video(path: Union[str, Path]) -> Generator[VideoSource, None, None]:
    """
    Open a video file for sampling and release the decoder on exit.

    Raises:
        SamplingError: If OpenCV cannot open the file
    """
    capture = cv2.VideoCapture(str(path))
    if not capture.isOpened():
        capture.release()
        raise SamplingError(
            f"Failed to load video for frame extraction: {Path(path).name}",
            details={"path": Path(path).name},
        )

    source = VideoSource(capture, label=Path(path).name)
    try:
        yield source
    finally:
        source.release()


class FrameSampler:
    """
    Extracts evenly spaced frames from a video resource.

    Frame ``i`` of ``count`` is taken at ``i * duration / count`` seconds, so
    timestamps are strictly increasing and lie in ``[0, duration)``.
    """

    def __init__(
        self,
        jpeg_quality: float = 0.7,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        if not 0.0 < jpeg_quality <= 1.0:
            raise ValueError(f"jpeg_quality must be in (0, 1], got {jpeg_quality}")
        self.jpeg_quality = jpeg_quality
        self.executor = executor

    @property
    def encode_params(self) -> List[int]:
        return [int(cv2.IMWRITE_JPEG_QUALITY), int(round(self.jpeg_quality * 100))]

    def timestamps(self, duration: Optional[float], count: int) -> List[float]:
        """Sample positions for a video of ``duration`` seconds"""
        if count < 1:
            raise ValueError(f"count must be a positive integer, got {count}")
        if duration is None:
            raise SamplingError("Video does not report a duration")
        if not math.isfinite(duration) or duration <= 0:
            raise SamplingError(
                f"Video duration is not usable: {duration}",
                details={"duration": str(duration)},
            )
        interval = duration / count
        return [i * interval for i in range(count)]

    def encode(self, picture: np.ndarray, timestamp: float) -> Frame:
        ok, buffer = cv2.imencode(".jpg", picture, self.encode_params)
        if not ok:
            raise SamplingError(
                f"Failed to encode frame at {timestamp:.3f}s",
                details={"timestamp": timestamp},
            )
        height, width = picture.shape[:2]
        return Frame(
            data=buffer.tobytes(),
            mime_type="image/jpeg",
            timestamp=timestamp,
            width=int(width),
            height=int(height),
        )

    def sample(
        self,
        video: VideoResource,
        count: int,
        token: Optional[CancellationToken] = None,
    ) -> List[Frame]:
        """
        Extract ``count`` frames from ``video``.

        Args:
            video: Seekable source; borrowed, never closed
            count: Number of frames (>= 1)
            token: Checked before every seek

        Returns:
            Exactly ``count`` frames in increasing timestamp order

        Raises:
            SamplingError: If the duration is unusable or any frame can't be decoded
            PipelineCancelledError: If the token is cancelled mid-extraction
        """
        positions = self.timestamps(video.duration, count)
        logger.debug(
            f"Sampling {count} frames from {video.duration:.2f}s video "
            f"({video.width}x{video.height})"
        )

        frames: List[Frame] = []
        for timestamp in positions:
            if token is not None:
                token.raise_if_cancelled(Stage.EXTRACTION.value)

            if not video.seek(timestamp):
                raise SamplingError(
                    f"Failed to seek to {timestamp:.3f}s",
                    details={"timestamp": timestamp},
                )
            picture = video.read()
            if picture is None:
                raise SamplingError(
                    f"Failed to decode frame at {timestamp:.3f}s",
                    details={"timestamp": timestamp},
                )
            frames.append(self.encode(picture, timestamp))

        logger.info(
            f"Extracted {len(frames)} frames "
            f"({sum(f.size_bytes for f in frames) / 1024:.1f}KB total)"
        )
        return frames

    async def sample_async(
        self,
        video: VideoResource,
        count: int,
        token: Optional[CancellationToken] = None,
    ) -> List[Frame]:
        """
        Run ``sample`` in the executor.

        The worker thread watches ``token`` between seeks. If the awaiting
        task is cancelled, the token is cancelled and the worker is awaited
        before re-raising, so the caller can release ``video`` safely.
        """
        token = token or CancellationToken()
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self.executor, self.sample, video, count, token)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            token.cancel()
            try:
                await future
            except Exception as e:
                logger.debug(f"Frame extraction stopped after cancellation: {e}")
            raise
