# backend/services/pipeline_logger.py
"""
Run-scoped logging and timing for the analysis pipeline.

Every log line carries the run id, and each stage's wall time is kept so a
one-line-per-stage report can be logged when the run ends.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Dict, Generator, List, Optional

from models.pipeline import PipelineRun, RunStatus

logger = logging.getLogger("trafficlens.pipeline")


@dataclass
class StageTiming:
    """Wall time and outcome of one stage"""
    stage: str
    started: float = field(default_factory=time.perf_counter)
    duration_ms: Optional[float] = None
    outcome: str = "running"  # running | ok | failed | cancelled
    metadata: Dict[str, Any] = field(default_factory=dict)

    def finish(self, outcome: str) -> None:
        self.duration_ms = (time.perf_counter() - self.started) * 1000
        self.outcome = outcome

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "durationMs": round(self.duration_ms, 1) if self.duration_ms is not None else None,
            "outcome": self.outcome,
            **self.metadata,
        }


@dataclass
class RunReport:
    """Timings collected over one pipeline run"""
    run_id: str
    source_label: str
    model: Optional[str] = None
    frame_count: Optional[int] = None
    started: float = field(default_factory=time.perf_counter)
    total_ms: Optional[float] = None
    stages: List[StageTiming] = field(default_factory=list)

    def close(self) -> None:
        self.total_ms = (time.perf_counter() - self.started) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "sourceLabel": self.source_label,
            "model": self.model,
            "frameCount": self.frame_count,
            "totalMs": round(self.total_ms, 1) if self.total_ms is not None else None,
            "stages": [s.to_dict() for s in self.stages],
        }

    def render(self) -> str:
        total = f"{self.total_ms:.1f}ms" if self.total_ms is not None else "open"
        lines = [f"{self.source_label} via {self.model or 'unknown model'} ({total})"]
        for timing in self.stages:
            took = f"{timing.duration_ms:.1f}ms" if timing.duration_ms is not None else "-"
            lines.append(f"  {timing.stage:<12} {timing.outcome:<9} {took}")
        return "\n".join(lines)


class PipelineLogger:
    """
    Logger bound to a single PipelineRun.

    Attaches itself as a run listener so status changes are logged no matter
    which code path moved the run.
    """

    def __init__(self, run: PipelineRun, model: Optional[str] = None):
        self.run = run
        self.report = RunReport(run_id=run.run_id, source_label=run.source_label, model=model)
        self._last_status = run.status
        run.add_listener(self._on_run_change)

    def _log(self, level: int, message: str, **extra: Any) -> None:
        logger.log(
            level,
            f"[{self.run.run_id[:8]}] {message}",
            extra={"run_id": self.run.run_id, **extra},
        )

    def info(self, message: str) -> None:
        self._log(logging.INFO, message)

    def warning(self, message: str) -> None:
        self._log(logging.WARNING, message)

    def error(self, message: str) -> None:
        self._log(logging.ERROR, message)

    def debug(self, message: str) -> None:
        self._log(logging.DEBUG, message)

    def _on_run_change(self, run: PipelineRun) -> None:
        if run.status == self._last_status:
            return
        self._last_status = run.status
        if run.status == RunStatus.FAILED and run.terminal_error is not None:
            # Structured copy for JSON log handlers
            self._log(
                logging.WARNING,
                f"Run failed at {len(run.completed_stages)} stage(s): "
                f"{type(run.terminal_error).__name__}: {run.terminal_error.message}",
                error=run.terminal_error.to_dict(),
            )
        else:
            self.debug(f"Run is now {run.status.value}")

    @contextmanager
    def stage(self, name: str) -> Generator[StageTiming, None, None]:
        """
        Time a stage and log its outcome.

        Usage:
            with plog.stage("extraction") as timing:
                frames = ...
                timing.metadata["frames"] = len(frames)
        """
        timing = StageTiming(stage=name)
        self.report.stages.append(timing)
        self.debug(f"{name} started")
        try:
            yield timing
        except BaseException as e:
            timing.finish("cancelled" if self.run.token.cancelled else "failed")
            self.error(f"{name} {timing.outcome} after {timing.duration_ms:.1f}ms: {type(e).__name__}")
            raise
        timing.finish("ok")
        self.info(f"{name} done in {timing.duration_ms:.1f}ms")

    def finish(self) -> RunReport:
        """Close the report and log it"""
        self.report.close()
        self.info(f"Run {self.run.status.value} in {self.report.total_ms:.1f}ms")
        self.debug(self.report.render())
        return self.report


def log_duration(label: str):
    """
    Log how long an awaited call took, at DEBUG on success and ERROR on failure.

    Usage:
        @log_duration("model_request")
        async def _post(self, body): ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{label} failed after {(time.perf_counter() - start) * 1000:.1f}ms: "
                    f"{type(e).__name__}"
                )
                raise
            logger.debug(f"{label} took {(time.perf_counter() - start) * 1000:.1f}ms")
            return result
        return wrapper
    return decorator
