"""
Tests for the pipeline run state machine and the analysis orchestrator.
"""

import asyncio

import pytest


class FakeAnalyzer:
    """Analyzer double that records requests and returns a canned result."""

    model = "fake-model"
    credential_configured = True

    def __init__(self, result=None, error=None, gate=None):
        self.result = result
        self.error = error
        self.gate = gate
        self.requests = []

    async def analyze(self, request, token=None):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def analysis_result(sample_result_payload):
    from models.analysis import parse_analysis_result
    return parse_analysis_result(sample_result_payload)


@pytest.fixture
def make_pipeline():
    from services.analysis_pipeline import AnalysisPipeline
    from services.frame_sampler import FrameSampler

    def _make(analyzer, frame_count=5, stage_dwell_seconds=0):
        return AnalysisPipeline(
            FrameSampler(),
            analyzer,
            frame_count=frame_count,
            stage_dwell_seconds=stage_dwell_seconds,
        )
    return _make


class TestPipelineRun:
    """Tests for PipelineRun transitions"""

    def test_initial_state(self):
        """A new run is idle with nothing completed"""
        from models.pipeline import PipelineRun, RunStatus, Stage

        run = PipelineRun(source_label="clip.mp4")

        assert run.status == RunStatus.IDLE
        assert run.completed_stages == []
        assert run.progress_percent == 0
        assert run.next_stage == Stage.EXTRACTION
        assert run.active_stage is None

    def test_stage_order_enforced(self):
        """Stages cannot be skipped"""
        from errors import PipelineStateError
        from models.pipeline import PipelineRun, Stage

        run = PipelineRun()
        run.start()

        with pytest.raises(PipelineStateError):
            run.complete_stage(Stage.DENOISING)

        run.complete_stage(Stage.EXTRACTION)
        assert run.active_stage == Stage.DENOISING

    def test_complete_stage_requires_running(self):
        """Idle runs cannot complete stages"""
        from errors import PipelineStateError
        from models.pipeline import PipelineRun, Stage

        with pytest.raises(PipelineStateError):
            PipelineRun().complete_stage(Stage.EXTRACTION)

    def test_succeed_requires_every_stage(self):
        """Success before the final stage is an illegal transition"""
        from errors import PipelineStateError
        from models.pipeline import PipelineRun, Stage

        run = PipelineRun()
        run.start()
        run.complete_stage(Stage.EXTRACTION)

        with pytest.raises(PipelineStateError):
            run.succeed(object())

    def test_first_terminal_error_wins(self):
        """A second failure on a terminal run is dropped"""
        from errors import SamplingError, TransportError
        from models.pipeline import PipelineRun, RunStatus

        run = PipelineRun()
        run.start()
        first = SamplingError("bad file")

        assert run.fail(first) is True
        assert run.fail(TransportError(500)) is False
        assert run.status == RunStatus.FAILED
        assert run.terminal_error is first

    def test_cannot_restart_terminal_run(self):
        """Failed runs cannot be started again"""
        from errors import PipelineStateError, SamplingError
        from models.pipeline import PipelineRun

        run = PipelineRun()
        run.start()
        run.fail(SamplingError("bad file"))

        with pytest.raises(PipelineStateError):
            run.start()

    def test_to_dict(self):
        """Snapshot should use camelCase keys and include the error body"""
        from errors import SamplingError
        from models.pipeline import PipelineRun, Stage

        run = PipelineRun(source_label="clip.mp4")
        run.start()
        run.complete_stage(Stage.EXTRACTION)
        run.fail(SamplingError("bad file"))

        data = run.to_dict()

        assert data["jobId"] == run.run_id
        assert data["status"] == "failed"
        assert data["completedStages"] == ["extraction"]
        assert data["progress"] == pytest.approx(16.67)
        assert data["activeStage"] is None
        assert [s["id"] for s in data["stages"]] == [
            "extraction", "denoising", "unblurring", "contrast", "detection", "insights",
        ]
        assert data["error"]["error"] == "bad file"
        assert data["endedAt"].endswith("Z")


class TestAnalysisPipeline:
    """Tests for AnalysisPipeline.run"""

    @pytest.mark.asyncio
    async def test_success_completes_every_stage(self, make_pipeline, fake_video_factory, analysis_result):
        """Should pass frames to the analyzer and finish at 100 percent"""
        from models.pipeline import RunStatus, STAGE_ORDER

        analyzer = FakeAnalyzer(result=analysis_result)
        pipeline = make_pipeline(analyzer)
        run = pipeline.create_run("clip.mp4")

        result = await pipeline.run(fake_video_factory(duration=10.0), "clip.mp4", file_size=1234, run=run)

        assert result is analysis_result
        assert run.status == RunStatus.SUCCEEDED
        assert run.completed_stages == STAGE_ORDER
        assert run.progress_percent == 100
        assert run.result is analysis_result
        assert run.terminal_error is None

        request = analyzer.requests[0]
        assert len(request.frames) == 5
        assert [f.timestamp for f in request.frames] == pytest.approx([0.0, 2.0, 4.0, 6.0, 8.0])
        assert request.source_label == "clip.mp4"
        assert request.file_size == 1234

    @pytest.mark.asyncio
    async def test_completed_stages_always_a_prefix(self, make_pipeline, fake_video_factory, analysis_result):
        """Every observed state should be an ordered prefix of the stage list"""
        from models.pipeline import STAGE_ORDER

        pipeline = make_pipeline(FakeAnalyzer(result=analysis_result))
        run = pipeline.create_run()
        snapshots = []
        run.add_listener(lambda r: snapshots.append((r.status, list(r.completed_stages))))

        await pipeline.run(fake_video_factory(), run=run)

        for _, completed in snapshots:
            assert completed == STAGE_ORDER[:len(completed)]
        lengths = [len(completed) for _, completed in snapshots]
        assert lengths == sorted(lengths)
        assert snapshots[-1][1] == STAGE_ORDER

    @pytest.mark.asyncio
    async def test_sampling_failure_stops_before_analysis(self, make_pipeline, fake_video_factory):
        """An extraction failure should fail the run with nothing completed"""
        from errors import SamplingError
        from models.pipeline import RunStatus

        analyzer = FakeAnalyzer()
        pipeline = make_pipeline(analyzer)
        run = pipeline.create_run()

        with pytest.raises(SamplingError) as exc_info:
            await pipeline.run(fake_video_factory(fail_at=0), run=run)

        assert run.status == RunStatus.FAILED
        assert run.completed_stages == []
        assert run.terminal_error is exc_info.value
        assert analyzer.requests == []

    @pytest.mark.asyncio
    async def test_adapter_failure_is_not_downgraded(self, make_pipeline, fake_video_factory):
        """The analyzer's typed error should surface unchanged"""
        from errors import TransportError
        from models.pipeline import RunStatus, STAGE_ORDER

        error = TransportError(status_code=503, body={"error": "overloaded"})
        pipeline = make_pipeline(FakeAnalyzer(error=error))
        run = pipeline.create_run()

        with pytest.raises(TransportError) as exc_info:
            await pipeline.run(fake_video_factory(), run=run)

        assert exc_info.value is error
        assert run.status == RunStatus.FAILED
        assert run.terminal_error is error
        assert run.completed_stages == STAGE_ORDER[:-1]
        assert run.result is None

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_run(self, make_pipeline, fake_video_factory):
        """Untyped errors still leave the run terminal"""
        from models.pipeline import RunStatus

        pipeline = make_pipeline(FakeAnalyzer(error=RuntimeError("boom")))
        run = pipeline.create_run()

        with pytest.raises(RuntimeError):
            await pipeline.run(fake_video_factory(), run=run)

        assert run.status == RunStatus.FAILED
        assert "boom" in run.terminal_error.message

    @pytest.mark.asyncio
    async def test_reusing_finished_run_raises(self, make_pipeline, fake_video_factory, analysis_result):
        """A finished run cannot be driven again"""
        from errors import PipelineStateError

        pipeline = make_pipeline(FakeAnalyzer(result=analysis_result))
        run = pipeline.create_run()
        await pipeline.run(fake_video_factory(), run=run)

        with pytest.raises(PipelineStateError):
            await pipeline.run(fake_video_factory(), run=run)

    @pytest.mark.asyncio
    async def test_cancel_during_pacing_stage(self, make_pipeline, fake_video_factory, analysis_result):
        """Cancelling the token should stop the run without a result"""
        from errors import PipelineCancelledError
        from models.pipeline import RunStatus, Stage

        analyzer = FakeAnalyzer(result=analysis_result)
        pipeline = make_pipeline(analyzer, stage_dwell_seconds=30)
        run = pipeline.create_run()
        extracted = asyncio.Event()
        run.add_listener(lambda r: extracted.set() if r.completed_stages else None)

        task = asyncio.create_task(pipeline.run(fake_video_factory(), run=run))
        await asyncio.wait_for(extracted.wait(), timeout=5)
        run.cancel()

        with pytest.raises(PipelineCancelledError) as exc_info:
            await asyncio.wait_for(task, timeout=5)

        assert exc_info.value.stage == Stage.DENOISING.value
        assert run.status == RunStatus.FAILED
        assert run.completed_stages == [Stage.EXTRACTION]
        assert run.result is None
        assert analyzer.requests == []

    @pytest.mark.asyncio
    async def test_task_cancellation_fails_run(self, make_pipeline, fake_video_factory, analysis_result):
        """Cancelling the asyncio task should mark the run failed and cancelled"""
        from errors import PipelineCancelledError
        from models.pipeline import RunStatus

        gate = asyncio.Event()
        analyzer = FakeAnalyzer(result=analysis_result, gate=gate)
        pipeline = make_pipeline(analyzer)
        run = pipeline.create_run()

        task = asyncio.create_task(pipeline.run(fake_video_factory(), run=run))
        while not analyzer.requests:
            await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert run.status == RunStatus.FAILED
        assert isinstance(run.terminal_error, PipelineCancelledError)
        assert run.terminal_error.stage == "insights"
        assert run.token.cancelled

    @pytest.mark.asyncio
    async def test_concurrent_runs_are_independent(self, make_pipeline, fake_video_factory, analysis_result):
        """Two runs on one pipeline should not share state"""
        from models.pipeline import RunStatus

        analyzer = FakeAnalyzer(result=analysis_result)
        pipeline = make_pipeline(analyzer, frame_count=3)
        first, second = pipeline.create_run("a.mp4"), pipeline.create_run("b.mp4")

        await asyncio.gather(
            pipeline.run(fake_video_factory(duration=3.0), "a.mp4", run=first),
            pipeline.run(fake_video_factory(duration=9.0), "b.mp4", run=second),
        )

        assert first.run_id != second.run_id
        assert first.status == second.status == RunStatus.SUCCEEDED
        labels = sorted(r.source_label for r in analyzer.requests)
        assert labels == ["a.mp4", "b.mp4"]

    def test_rejects_non_positive_frame_count(self, make_pipeline):
        """frame_count must be at least one"""
        with pytest.raises(ValueError):
            make_pipeline(FakeAnalyzer(), frame_count=0)
