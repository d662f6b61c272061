"""Tests for run reports and summaries."""

import json

from shipyard.pipeline.artifacts import ArtifactHandle
from shipyard.pipeline.engine import PipelineRun, RunStatus
from shipyard.pipeline.stage import FailurePolicy, StageResult, StageStatus
from shipyard.pipeline.step import StepResult, StepStatus
from shipyard.report import build_report, format_duration, render_summary, tail


def failed_run() -> PipelineRun:
    output = "".join(f"line-{i:02d}\n" for i in range(30))
    return PipelineRun(
        run_id="20260101-120000-abc123",
        pipeline_name="devsecops",
        status=RunStatus.FAILED,
        started_at="2026-01-01T12:00:00+00:00",
        finished_at="2026-01-01T12:01:05+00:00",
        duration=65.0,
        error="stage 'scan' failed",
        stages=[
            StageResult(
                stage_name="checkout",
                status=StageStatus.SUCCEEDED,
                step_results=[StepResult(step_name="clone", status=StepStatus.SUCCESS, exit_code=0, attempt_count=1)],
                started_at="2026-01-01T12:00:00+00:00",
                finished_at="2026-01-01T12:00:02+00:00",
                duration=2.0,
                artifacts=["commit"],
            ),
            StageResult(
                stage_name="scan",
                status=StageStatus.FAILED,
                step_results=[
                    StepResult(step_name="trivy", status=StepStatus.FAILURE, exit_code=1,
                               output=output, attempt_count=2, error="exit code 1"),
                ],
                started_at="2026-01-01T12:00:02+00:00",
                finished_at="2026-01-01T12:01:05+00:00",
                duration=63.0,
                error="step 'trivy' failure: exit code 1",
            ),
            StageResult(
                stage_name="deploy",
                status=StageStatus.ABORTED,
                step_results=[StepResult.skipped("apply", "pipeline halted: stage 'scan' failed")],
                error="pipeline halted: stage 'scan' failed",
            ),
        ],
        artifacts=[ArtifactHandle(
            run_id="20260101-120000-abc123", name="commit", stage="checkout",
            ref="sha256:0", digest="0", value="deadbeef",
        )],
    )


class TestFormatDuration:
    """format_duration()."""

    def test_seconds(self):
        """Happy: short durations keep one decimal."""
        assert format_duration(5) == "5.0s"

    def test_minutes(self):
        """Happy: minutes and seconds."""
        assert format_duration(125) == "2m 5s"

    def test_hours(self):
        """Happy: hours and minutes."""
        assert format_duration(3700) == "1h 1m"


class TestRenderSummary:
    """Human-readable summary."""

    def test_failed_run(self):
        """Failure: the first failing step and its output tail are shown."""
        summary = render_summary(failed_run())
        assert summary.splitlines()[0] == "Run 20260101-120000-abc123 (devsecops): FAILED in 1m 5s"
        assert "checkout" in summary
        assert "pipeline halted: stage 'scan' failed" in summary
        assert "First failure: scan/trivy (exit 1, 2 attempt(s))" in summary
        assert "line-29" in summary
        assert "line-10" in summary
        assert "line-09" not in summary
        assert "commit <- checkout: deadbeef" in summary

    def test_degraded_run(self):
        """Happy: degraded successes are labelled."""
        run = PipelineRun(run_id="r", pipeline_name="p", status=RunStatus.SUCCEEDED, degraded=True)
        assert "SUCCEEDED (degraded)" in render_summary(run)

    def test_tolerated_steps_listed(self):
        """Happy: tolerated failures are called out."""
        run = PipelineRun(
            run_id="r",
            pipeline_name="p",
            status=RunStatus.SUCCEEDED,
            stages=[StageResult(
                stage_name="deploy",
                status=StageStatus.SUCCEEDED,
                failure_policy=FailurePolicy.ABORT_PIPELINE,
                started_at="2026-01-01T12:00:00+00:00",
                step_results=[StepResult(step_name="remove-old", status=StepStatus.FAILURE, tolerated=True)],
            )],
        )
        assert "deploy/remove-old failed (tolerated)" in render_summary(run)

    def test_tail(self):
        """Happy: tail keeps the last lines."""
        assert tail("a\nb\nc\n", 2) == "b\nc"


class TestBuildReport:
    """Structured report."""

    def test_report_is_json_serializable(self):
        """Happy: the report dumps cleanly and carries summary counts."""
        report = build_report(failed_run())
        restored = json.loads(json.dumps(report))
        assert restored["status"] == "failed"
        assert restored["report_version"] == 1
        assert restored["summary"] == {
            "stages_total": 3,
            "stages_succeeded": 1,
            "stages_failed": 1,
            "stages_aborted": 1,
            "failed_stages": ["scan"],
            "degraded": False,
        }
        assert restored["stages"][1]["steps"][0]["attempt_count"] == 2
