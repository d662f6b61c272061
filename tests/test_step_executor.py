"""Tests for StepDefinition, OutputBuffer and StepExecutor."""

import sys
import threading
import time
from unittest.mock import patch

import pytest

from shipyard.errors import ConfigurationError, StepExecutionError
from shipyard.pipeline.step import (
    EXIT_ABORTED,
    EXIT_NOT_EXECUTABLE,
    EXIT_NOT_FOUND,
    EXIT_TIMEOUT,
    OutputBuffer,
    StepDefinition,
    StepExecutor,
    StepStatus,
)
from shipyard.pipeline.tools import ToolAdapter, ToolRegistry


def py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


COUNTER_SCRIPT = """\
import pathlib, sys
p = pathlib.Path('count.txt')
n = int(p.read_text()) + 1 if p.exists() else 1
p.write_text(str(n))
sys.exit(0 if n >= 3 else 1)
"""


class TestStepDefinition:
    """Validation of step configuration."""

    def test_string_command_is_split(self):
        """Happy: a plain string command becomes an argv list."""
        step = StepDefinition(name="build", command="docker build -t 'my app' .")
        assert step.command == ["docker", "build", "-t", "my app", "."]

    def test_shell_command_kept_whole(self):
        """Happy: shell commands are kept as one string."""
        step = StepDefinition(name="build", command="echo a && echo b", shell=True)
        assert step.command == ["echo a && echo b"]

    def test_empty_command_rejected(self):
        """Failure: a step without a command is a configuration error."""
        with pytest.raises(ConfigurationError, match="empty command"):
            StepDefinition(name="noop", command=[])

    def test_tool_and_command_rejected(self):
        """Failure: tool and command are mutually exclusive."""
        with pytest.raises(ConfigurationError, match="both"):
            StepDefinition(name="scan", command=["true"], tool="trivy-fs")

    def test_non_positive_timeout_rejected(self):
        """Failure: timeouts must be positive."""
        with pytest.raises(ConfigurationError, match="timeout"):
            StepDefinition(name="x", command=["true"], timeout=0)

    def test_negative_retries_rejected(self):
        """Failure: retry count cannot be negative."""
        with pytest.raises(ConfigurationError, match="retries"):
            StepDefinition(name="x", command=["true"], retries=-1)


class TestOutputBuffer:
    """Bounded tail buffer."""

    def test_keeps_everything_under_limit(self):
        """Happy: small output is returned unchanged."""
        buffer = OutputBuffer(limit=100)
        buffer.append("hello\n")
        buffer.append("world\n")
        assert buffer.getvalue() == "hello\nworld\n"
        assert not buffer.truncated

    def test_drops_oldest_text_and_marks(self):
        """Happy: excess output is dropped from the head with a marker."""
        buffer = OutputBuffer(limit=10)
        buffer.append("0123456789")
        buffer.append("abcde")
        assert buffer.truncated
        assert buffer.dropped == 5
        assert buffer.getvalue() == "[... truncated 5 characters ...]\n56789abcde"

    def test_rejects_non_positive_limit(self):
        """Failure: limit must be positive."""
        with pytest.raises(ValueError):
            OutputBuffer(limit=0)


class TestStepExecutorBasics:
    """Spawning, output capture and exit codes."""

    def test_success_captures_combined_output(self, executor, env):
        """Happy: stdout and stderr are both captured."""
        step = StepDefinition(
            name="hello",
            command=py("import sys; print('out'); print('err', file=sys.stderr)"),
            timeout=30,
        )
        result = executor.execute(step, env)
        assert result.status == StepStatus.SUCCESS
        assert result.exit_code == 0
        assert "out" in result.output
        assert "err" in result.output
        assert result.attempt_count == 1
        assert result.duration >= 0

    def test_nonzero_exit_is_failure(self, executor, env):
        """Failure: a non-zero exit code fails the step."""
        step = StepDefinition(name="boom", command=py("import sys; sys.exit(3)"), timeout=30)
        result = executor.execute(step, env)
        assert result.status == StepStatus.FAILURE
        assert result.exit_code == 3
        assert result.error == "exit code 3"

    def test_command_not_found(self, executor, env):
        """Failure: a missing binary raises StepExecutionError with exit code 127."""
        step = StepDefinition(name="ghost", command=["definitely-not-a-real-binary-xyz"], timeout=30)
        with pytest.raises(StepExecutionError) as exc_info:
            executor.execute(step, env)
        assert exc_info.value.exit_code == EXIT_NOT_FOUND
        assert exc_info.value.step_name == "ghost"

    def test_missing_workdir_is_not_reported_as_missing_command(self, executor, env):
        """Failure: a nonexistent workdir names the directory, not the binary."""
        step = StepDefinition(name="pwd", command=py("pass"), workdir="nope", timeout=30)
        with pytest.raises(StepExecutionError, match="Working directory does not exist") as exc_info:
            executor.execute(step, env)
        assert "Command not found" not in str(exc_info.value)
        assert exc_info.value.step_name == "pwd"

    def test_file_as_workdir(self, executor, env, tmp_path):
        """Failure: a workdir that is a regular file raises StepExecutionError."""
        (tmp_path / "notes.txt").write_text("x")
        step = StepDefinition(name="pwd", command=py("pass"), workdir="notes.txt", timeout=30)
        with pytest.raises(StepExecutionError, match="not a directory"):
            executor.execute(step, env)

    def test_other_launch_errors_are_wrapped(self, executor, env):
        """Failure: any OSError from spawning becomes a StepExecutionError."""
        step = StepDefinition(name="spawn", command=py("pass"), timeout=30)
        with patch("shipyard.pipeline.step.subprocess.Popen", side_effect=OSError(7, "Argument list too long")):
            with pytest.raises(StepExecutionError, match="Could not launch") as exc_info:
                executor.execute(step, env)
        assert exc_info.value.exit_code == EXIT_NOT_EXECUTABLE

    def test_runs_in_step_workdir(self, executor, env, tmp_path):
        """Happy: relative workdir resolves against the run workdir."""
        (tmp_path / "sub").mkdir()
        step = StepDefinition(
            name="pwd", command=py("import os; print(os.getcwd())"), workdir="sub", timeout=30
        )
        result = executor.execute(step, env)
        assert result.output.strip().endswith("sub")

    def test_shell_step(self, executor, env):
        """Happy: shell steps run through /bin/sh."""
        step = StepDefinition(name="sh", command="echo one && echo two", shell=True, timeout=30)
        result = executor.execute(step, env)
        assert result.status == StepStatus.SUCCESS
        assert result.output.split() == ["one", "two"]


class TestStepExecutorEnvironment:
    """Environment and placeholder binding."""

    def test_artifacts_exposed_as_env_and_placeholders(self, executor, env):
        """Happy: artifact bindings reach the process as env vars and {name}."""
        bound = env.bind_artifacts({"image-tag": "reg/app:1"})
        step = StepDefinition(
            name="show",
            command=py("import os; print(os.environ['ARTIFACT_IMAGE_TAG']); print('{image-tag}')"),
            timeout=30,
        )
        result = executor.execute(step, bound)
        assert result.output.split() == ["reg/app:1", "reg/app:1"]

    def test_step_env_overrides_run_variables(self, executor, env):
        """Happy: step env wins over pipeline variables."""
        ctx = env.with_variables({"STAGE": "pipeline"})
        step = StepDefinition(
            name="env",
            command=py("import os; print(os.environ['STAGE'], os.environ['SHIPYARD_RUN_ID'])"),
            env={"STAGE": "step"},
            timeout=30,
        )
        result = executor.execute(step, ctx)
        assert result.output.strip() == "step run-1"

    def test_fail_on_pattern(self, executor, env):
        """Failure: a matching fail_on pattern fails a zero exit."""
        step = StepDefinition(
            name="scan",
            command=py("print('CRITICAL: 3')"),
            fail_on=["CRITICAL: [1-9]"],
            timeout=30,
        )
        result = executor.execute(step, env)
        assert result.status == StepStatus.FAILURE
        assert result.exit_code == 0
        assert "matched" in result.error

    def test_tool_step_uses_adapter(self, env):
        """Happy: tool steps render the adapter's argv template."""
        registry = ToolRegistry([
            ToolAdapter(name="say", argv=[sys.executable, "-c", "print('{message}')"]),
        ])
        executor = StepExecutor(tools=registry, poll_interval=0.01)
        step = StepDefinition(name="greet", tool="say", args={"message": "hi there"}, timeout=30)
        result = executor.execute(step, env)
        assert result.output.strip() == "hi there"

    def test_tool_missing_argument(self, env):
        """Failure: unresolved tool placeholders raise before spawning."""
        registry = ToolRegistry([ToolAdapter(name="say", argv=["echo", "{message}"])])
        executor = StepExecutor(tools=registry)
        step = StepDefinition(name="greet", tool="say")
        with pytest.raises(StepExecutionError, match="message") as exc_info:
            executor.execute(step, env)
        assert exc_info.value.step_name == "greet"


class TestStepExecutorLimits:
    """Timeouts, truncation and cancellation."""

    def test_timeout_kills_step(self, executor, env):
        """Failure: a step over its timeout is killed with exit code 124."""
        step = StepDefinition(name="slow", command=py("import time; time.sleep(30)"), timeout=0.5)
        start = time.monotonic()
        result = executor.execute(step, env)
        assert time.monotonic() - start < 10
        assert result.status == StepStatus.TIMED_OUT
        assert result.exit_code == EXIT_TIMEOUT
        assert "timed out" in result.error

    def test_default_timeout_applies(self, env):
        """Failure: steps without a timeout use the executor default."""
        executor = StepExecutor(default_timeout=0.5, poll_interval=0.01)
        step = StepDefinition(name="slow", command=py("import time; time.sleep(30)"))
        result = executor.execute(step, env)
        assert result.status == StepStatus.TIMED_OUT

    def test_output_is_truncated(self, env):
        """Happy: output past the limit keeps the tail and is flagged."""
        executor = StepExecutor(max_output_chars=100, poll_interval=0.01)
        step = StepDefinition(name="noisy", command=py("print('x' * 1000)"), timeout=30)
        result = executor.execute(step, env)
        assert result.status == StepStatus.SUCCESS
        assert result.truncated
        assert result.output.startswith("[... truncated 901 characters ...]\n")
        assert result.output.endswith("x" * 99 + "\n")

    def test_cancel_aborts_running_step(self, executor, env):
        """Failure: setting the cancel event kills the step."""
        cancel = threading.Event()
        timer = threading.Timer(0.5, cancel.set)
        timer.start()
        try:
            step = StepDefinition(name="slow", command=py("import time; time.sleep(30)"), timeout=60)
            result = executor.execute(step, env, cancel)
        finally:
            timer.cancel()
        assert result.status == StepStatus.ABORTED
        assert result.exit_code == EXIT_ABORTED


class TestStepExecutorRetries:
    """Retry behavior (tenacity-driven)."""

    def test_retries_until_success(self, executor, env, tmp_path):
        """Happy: two failures then a success makes three attempts."""
        step = StepDefinition(name="flaky", command=py(COUNTER_SCRIPT), retries=2, timeout=30)
        result = executor.execute(step, env)
        assert result.status == StepStatus.SUCCESS
        assert result.attempt_count == 3
        assert [a.status for a in result.attempts] == [
            StepStatus.FAILURE,
            StepStatus.FAILURE,
            StepStatus.SUCCESS,
        ]
        assert (tmp_path / "count.txt").read_text() == "3"

    def test_retries_exhausted(self, executor, env):
        """Failure: the last failed attempt is returned after all retries."""
        step = StepDefinition(name="broken", command=py("import sys; sys.exit(2)"), retries=1, timeout=30)
        result = executor.execute(step, env)
        assert result.status == StepStatus.FAILURE
        assert result.attempt_count == 2
        assert result.exit_code == 2

    def test_no_retry_without_retries(self, executor, env, tmp_path):
        """Failure: retries=0 runs exactly once."""
        step = StepDefinition(name="flaky", command=py(COUNTER_SCRIPT), timeout=30)
        result = executor.execute(step, env)
        assert result.status == StepStatus.FAILURE
        assert result.attempt_count == 1
        assert (tmp_path / "count.txt").read_text() == "1"
