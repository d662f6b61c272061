"""
Run reports.

Turns a PipelineRun into a structured, JSON-serializable report for
archival and a compact human-readable summary for the terminal.
"""

from datetime import datetime, timezone
from typing import Any

from .pipeline.engine import PipelineRun, RunStatus
from .pipeline.stage import StageStatus
from .pipeline.step import StepStatus

REPORT_VERSION = 1
OUTPUT_TAIL_LINES = 20

_STAGE_MARKS = {
    StageStatus.SUCCEEDED: "✓",
    StageStatus.FAILED: "✗",
    StageStatus.ABORTED: "-",
    StageStatus.PENDING: " ",
    StageStatus.RUNNING: "…",
}


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{mins}m {secs}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


def build_report(run: PipelineRun) -> dict[str, Any]:
    """Structured report of a run, safe to json.dump."""
    report = run.to_dict()
    report["report_version"] = REPORT_VERSION
    report["generated_at"] = datetime.now(timezone.utc).isoformat()
    report["summary"] = {
        "stages_total": len(run.stages),
        "stages_succeeded": sum(1 for s in run.stages if s.status == StageStatus.SUCCEEDED),
        "stages_failed": sum(1 for s in run.stages if s.status == StageStatus.FAILED),
        "stages_aborted": sum(1 for s in run.stages if s.status == StageStatus.ABORTED),
        "failed_stages": [s.stage_name for s in run.failed_stages],
        "degraded": run.degraded,
    }
    return report


def tail(output: str, lines: int = OUTPUT_TAIL_LINES) -> str:
    """Last `lines` lines of output."""
    parts = output.rstrip("\n").splitlines()
    return "\n".join(parts[-lines:])


def render_summary(run: PipelineRun, tail_lines: int = OUTPUT_TAIL_LINES) -> str:
    """Human-readable summary: status, per-stage lines and the first failure."""
    status = run.status.value.upper()
    if run.status == RunStatus.SUCCEEDED and run.degraded:
        status += " (degraded)"

    lines = [
        f"Run {run.run_id} ({run.pipeline_name}): {status} in {format_duration(run.duration)}",
    ]
    for stage in run.stages:
        mark = _STAGE_MARKS.get(stage.status, "?")
        line = f"  {mark} {stage.stage_name:<24} {stage.status.value:<10}"
        if stage.executed:
            line += f" {format_duration(stage.duration)}"
        if stage.status != StageStatus.SUCCEEDED and stage.error:
            line += f"  ({stage.error})"
        lines.append(line)

    tolerated = [
        (stage.stage_name, step.step_name)
        for stage in run.stages
        for step in stage.step_results
        if step.tolerated
    ]
    for stage_name, step_name in tolerated:
        lines.append(f"  ! {stage_name}/{step_name} failed (tolerated)")

    first_failure = next((s for s in run.stages if s.status == StageStatus.FAILED), None)
    if first_failure is not None:
        step = first_failure.failed_step
        if step is not None and step.status != StepStatus.SKIPPED:
            lines.append("")
            lines.append(
                f"First failure: {first_failure.stage_name}/{step.step_name} "
                f"(exit {step.exit_code}, {step.attempt_count} attempt(s))"
            )
            if step.error:
                lines.append(f"  {step.error}")
            output_tail = tail(step.output, tail_lines)
            if output_tail:
                lines.append("  --- output (tail) ---")
                lines.extend(f"  {line}" for line in output_tail.splitlines())

    if run.artifacts:
        lines.append("")
        lines.append("Artifacts:")
        for handle in run.artifacts:
            lines.append(f"  {handle.name} <- {handle.stage}: {handle.binding}")

    return "\n".join(lines)
