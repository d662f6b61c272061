"""
Step definition and execution.

A step is a single external command. The executor spawns it with the merged
environment, captures combined stdout/stderr into a bounded buffer, enforces
the timeout, honors run cancellation and retries failed attempts.

Retried steps are NOT sandboxed: an image push or manifest apply may happen
more than once, so step commands must be idempotent.
"""

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from tenacity import RetryCallState, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from ..errors import ConfigurationError, StepExecutionError
from .environment import EnvironmentContext
from .outputs import CompositeParser, ExitCodeParser, OutputParser, PatternParser
from .tools import ToolRegistry, default_registry

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127
EXIT_ABORTED = 130

DEFAULT_MAX_OUTPUT_CHARS = 1_000_000


class StepStatus(str, Enum):
    """Outcome of a step."""
    SUCCESS = "success"
    FAILURE = "failure"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"
    ABORTED = "aborted"

    @property
    def is_failure(self) -> bool:
        """Failure for policy purposes (timeouts count as failures)."""
        return self in (StepStatus.FAILURE, StepStatus.TIMED_OUT)


@dataclass
class StepDefinition:
    """Static configuration for one step.

    Attributes:
        name: Step identifier, unique within its stage
        command: Argument vector (or a single shell string when shell=True)
        tool: Registered tool name, used instead of command
        args: Arguments for the tool's argv template
        shell: Run the command through /bin/sh -c
        env: Environment overrides for this step
        workdir: Working directory, relative to the run workdir
        timeout: Seconds before the step is killed (None = no limit)
        retries: Additional attempts after a failed or timed-out attempt
        retry_delay: Seconds to wait between attempts
        continue_on_error: Tolerate failure instead of failing the stage
        fail_on: Regex patterns that mark the output as failed
    """
    name: str
    command: list[str] = field(default_factory=list)
    tool: str | None = None
    args: dict[str, Any] = field(default_factory=dict)
    shell: bool = False
    env: dict[str, str] = field(default_factory=dict)
    workdir: str | None = None
    timeout: float | None = None
    retries: int = 0
    retry_delay: float = 0.0
    continue_on_error: bool = False
    fail_on: list[str] = field(default_factory=list)

    def __post_init__(self):
        if isinstance(self.command, str):
            self.command = [self.command] if self.shell else shlex.split(self.command)
        if not self.name or not self.name.strip():
            raise ConfigurationError("Step name cannot be empty")
        if self.tool is None and not any(part.strip() for part in self.command):
            raise ConfigurationError(f"Step '{self.name}' has an empty command")
        if self.tool is not None and self.command:
            raise ConfigurationError(f"Step '{self.name}' sets both 'tool' and 'command'")
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError(f"Step '{self.name}' timeout must be positive")
        if self.retries < 0:
            raise ConfigurationError(f"Step '{self.name}' retries cannot be negative")
        if self.retry_delay < 0:
            raise ConfigurationError(f"Step '{self.name}' retry_delay cannot be negative")


@dataclass
class AttemptRecord:
    """One execution attempt of a step."""
    attempt: int
    status: StepStatus
    exit_code: int | None
    duration: float

    def to_dict(self) -> dict:
        return {
            "attempt": self.attempt,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AttemptRecord":
        return cls(
            attempt=data.get("attempt", 1),
            status=StepStatus(data.get("status", StepStatus.FAILURE.value)),
            exit_code=data.get("exit_code"),
            duration=data.get("duration", 0.0),
        )


@dataclass
class StepResult:
    """Result of executing a step (the last attempt when retried).

    Attributes:
        step_name: Name of the step
        status: Final status
        exit_code: Process exit code (124 timeout, 127 not found, 130 aborted)
        output: Combined stdout/stderr, bounded
        duration: Seconds spent in the last attempt
        attempts: Every attempt, in order
        attempt_count: Number of attempts made
        truncated: Whether output exceeded the buffer
        error: Reason for failure, if any
        tolerated: Failed but flagged continue_on_error
    """
    step_name: str
    status: StepStatus
    exit_code: int | None = None
    output: str = ""
    duration: float = 0.0
    attempts: list[AttemptRecord] = field(default_factory=list)
    attempt_count: int = 0
    truncated: bool = False
    error: str | None = None
    tolerated: bool = False

    @property
    def failed(self) -> bool:
        return self.status.is_failure

    @classmethod
    def skipped(cls, step_name: str, reason: str | None = None) -> "StepResult":
        return cls(step_name=step_name, status=StepStatus.SKIPPED, error=reason)

    def to_dict(self) -> dict:
        return {
            "step_name": self.step_name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "output": self.output,
            "duration": self.duration,
            "attempts": [a.to_dict() for a in self.attempts],
            "attempt_count": self.attempt_count,
            "truncated": self.truncated,
            "error": self.error,
            "tolerated": self.tolerated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StepResult":
        return cls(
            step_name=data["step_name"],
            status=StepStatus(data["status"]),
            exit_code=data.get("exit_code"),
            output=data.get("output", ""),
            duration=data.get("duration", 0.0),
            attempts=[AttemptRecord.from_dict(a) for a in data.get("attempts", [])],
            attempt_count=data.get("attempt_count", 0),
            truncated=data.get("truncated", False),
            error=data.get("error"),
            tolerated=data.get("tolerated", False),
        )


class OutputBuffer:
    """Thread-safe tail buffer holding at most `limit` characters.

    When output exceeds the limit, the oldest text is dropped and a marker
    recording how much was dropped is prepended on read.
    """

    def __init__(self, limit: int = DEFAULT_MAX_OUTPUT_CHARS):
        if limit <= 0:
            raise ValueError("Output buffer limit must be positive")
        self.limit = limit
        self.dropped = 0
        self._chunks: deque[str] = deque()
        self._size = 0
        self._lock = threading.Lock()

    @property
    def truncated(self) -> bool:
        return self.dropped > 0

    def append(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._chunks.append(text)
            self._size += len(text)
            while self._size > self.limit:
                excess = self._size - self.limit
                head = self._chunks[0]
                if len(head) <= excess:
                    self._chunks.popleft()
                    self._size -= len(head)
                    self.dropped += len(head)
                else:
                    self._chunks[0] = head[excess:]
                    self._size -= excess
                    self.dropped += excess

    def getvalue(self) -> str:
        with self._lock:
            text = "".join(self._chunks)
            if self.dropped:
                return f"[... truncated {self.dropped} characters ...]\n{text}"
            return text


class StepExecutor:
    """Runs steps as subprocesses.

    Args:
        tools: Registry used to resolve `tool` steps
        max_output_chars: Bound on captured output per attempt
        default_timeout: Timeout applied to steps that declare none
        poll_interval: Seconds between cancellation/timeout checks
    """

    def __init__(
        self,
        tools: ToolRegistry | None = None,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
        default_timeout: float | None = None,
        poll_interval: float = 0.05,
    ):
        self.tools = tools or default_registry()
        self.max_output_chars = max_output_chars
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval

    def resolve_argv(self, step: StepDefinition, env: EnvironmentContext) -> list[str]:
        """Build the final argument vector for a step."""
        if step.tool is not None:
            try:
                adapter = self.tools.get(step.tool)
            except ConfigurationError as e:
                raise StepExecutionError(str(e), step.name, EXIT_NOT_FOUND) from e
            try:
                return adapter.build_argv(step.args, env)
            except StepExecutionError as e:
                e.step_name = step.name
                raise

        argv = [env.render(part) for part in step.command]
        if step.shell:
            return ["/bin/sh", "-c", " ".join(argv)]
        if not argv or not argv[0].strip():
            raise StepExecutionError(f"Step '{step.name}' has an empty command", step.name, EXIT_NOT_FOUND)
        return argv

    def resolve_parser(self, step: StepDefinition) -> OutputParser:
        parser: OutputParser = ExitCodeParser()
        if step.tool is not None and step.tool in self.tools:
            parser = self.tools.get(step.tool).parser
        if step.fail_on:
            parser = CompositeParser([parser, PatternParser(step.fail_on)])
        return parser

    def execute(
        self,
        step: StepDefinition,
        env: EnvironmentContext,
        cancel_event: threading.Event | None = None,
    ) -> StepResult:
        """Execute a step, retrying failed attempts up to step.retries times.

        Returns:
            The last attempt's StepResult, annotated with every attempt

        Raises:
            StepExecutionError: If the command cannot be launched
        """
        argv = self.resolve_argv(step, env)
        parser = self.resolve_parser(step)
        timeout = step.timeout if step.timeout is not None else self.default_timeout
        if timeout is None:
            logger.warning("Step '%s' has no timeout; it may run indefinitely", step.name)

        attempts: list[AttemptRecord] = []

        def run_attempt() -> StepResult:
            result = self._attempt(step, argv, parser, env, timeout, cancel_event)
            attempts.append(AttemptRecord(
                attempt=len(attempts) + 1,
                status=result.status,
                exit_code=result.exit_code,
                duration=result.duration,
            ))
            return result

        def should_retry(result: StepResult) -> bool:
            cancelled = cancel_event is not None and cancel_event.is_set()
            return result.status.is_failure and not cancelled

        retrying = Retrying(
            stop=stop_after_attempt(step.retries + 1),
            wait=wait_fixed(step.retry_delay),
            retry=retry_if_result(should_retry),
            sleep=self._sleeper(cancel_event),
            before_sleep=self._log_retry(step),
            retry_error_callback=lambda state: state.outcome.result(),
            reraise=True,
        )
        result = retrying(run_attempt)

        result.attempts = attempts
        result.attempt_count = len(attempts)
        logger.info(
            "Step '%s' finished: %s (exit=%s, attempts=%d, %.2fs)",
            step.name, result.status.value, result.exit_code, result.attempt_count, result.duration,
        )
        return result

    def _attempt(
        self,
        step: StepDefinition,
        argv: list[str],
        parser: OutputParser,
        env: EnvironmentContext,
        timeout: float | None,
        cancel_event: threading.Event | None,
    ) -> StepResult:
        cwd = env.resolve_path(env.render(step.workdir)) if step.workdir else Path(env.workdir)
        buffer = OutputBuffer(self.max_output_chars)
        start = time.monotonic()

        if not cwd.exists():
            raise StepExecutionError(f"Working directory does not exist: {cwd}", step.name, EXIT_NOT_FOUND)
        if not cwd.is_dir():
            raise StepExecutionError(f"Working directory is not a directory: {cwd}", step.name, EXIT_NOT_FOUND)

        logger.debug("Step '%s' spawning: %s (cwd=%s)", step.name, argv, cwd)
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                cwd=str(cwd),
                env=env.process_env(step.env),
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise StepExecutionError(
                f"Command not found: {argv[0]} ({e.strerror or e})", step.name, EXIT_NOT_FOUND
            ) from e
        except PermissionError as e:
            raise StepExecutionError(
                f"Command not executable: {argv[0]}", step.name, EXIT_NOT_EXECUTABLE
            ) from e
        except OSError as e:
            raise StepExecutionError(
                f"Could not launch {argv[0]}: {e.strerror or e}", step.name, EXIT_NOT_EXECUTABLE
            ) from e

        reader = threading.Thread(target=self._pump, args=(process.stdout, buffer), daemon=True)
        reader.start()

        deadline = start + timeout if timeout is not None else None
        forced_status: StepStatus | None = None
        while True:
            try:
                exit_code = process.wait(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                forced_status = StepStatus.ABORTED
            elif deadline is not None and time.monotonic() >= deadline:
                forced_status = StepStatus.TIMED_OUT
            if forced_status is not None:
                self._terminate(process)
                break

        reader.join(timeout=5)
        duration = time.monotonic() - start

        if forced_status is StepStatus.TIMED_OUT:
            buffer.append(f"\n[step timed out after {timeout}s]\n")
            return StepResult(
                step_name=step.name,
                status=StepStatus.TIMED_OUT,
                exit_code=EXIT_TIMEOUT,
                output=buffer.getvalue(),
                duration=duration,
                truncated=buffer.truncated,
                error=f"timed out after {timeout}s",
            )
        if forced_status is StepStatus.ABORTED:
            return StepResult(
                step_name=step.name,
                status=StepStatus.ABORTED,
                exit_code=EXIT_ABORTED,
                output=buffer.getvalue(),
                duration=duration,
                truncated=buffer.truncated,
                error="cancelled",
            )

        output = buffer.getvalue()
        verdict = parser.evaluate(output, exit_code)
        return StepResult(
            step_name=step.name,
            status=StepStatus.SUCCESS if verdict.ok else StepStatus.FAILURE,
            exit_code=exit_code,
            output=output,
            duration=duration,
            truncated=buffer.truncated,
            error=verdict.reason,
        )

    @staticmethod
    def _pump(stream, buffer: OutputBuffer) -> None:
        try:
            for line in stream:
                buffer.append(line)
        except ValueError:
            # Stream closed underneath us after the process was killed
            pass
        finally:
            stream.close()

    @staticmethod
    def _terminate(process: subprocess.Popen) -> None:
        """Kill the step's whole process group."""
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except (ProcessLookupError, PermissionError):
            process.kill()
        process.wait()

    @staticmethod
    def _sleeper(cancel_event: threading.Event | None) -> Callable[[float], None]:
        if cancel_event is None:
            return time.sleep
        return lambda seconds: cancel_event.wait(seconds)

    @staticmethod
    def _log_retry(step: StepDefinition) -> Callable[[RetryCallState], None]:
        def _log(state: RetryCallState) -> None:
            result = state.outcome.result() if state.outcome and not state.outcome.failed else None
            wait_s = state.next_action.sleep if state.next_action else None
            logger.warning(
                "Step '%s' retrying (attempt=%s/%s, status=%s, wait_s=%s)",
                step.name,
                state.attempt_number + 1,
                step.retries + 1,
                result.status.value if result else None,
                wait_s,
            )

        return _log
