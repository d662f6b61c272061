"""
Output parsers for step results.

Defines how a finished command is judged (exit code, forbidden output
patterns) and how steps hand values to later steps through
[[ARTIFACT:name=value]] markers in their output.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class OutputVerdict:
    """Result of judging a finished command.

    Attributes:
        ok: Whether the command is considered successful
        reason: Human-readable reason when not ok
    """
    ok: bool
    reason: str | None = None


class OutputParser(ABC):
    """Base class for result parsers."""

    @abstractmethod
    def evaluate(self, output: str, exit_code: int) -> OutputVerdict:
        """Judge a command from its combined output and exit code."""


class ExitCodeParser(OutputParser):
    """Succeeds when the exit code is one of success_codes (default: 0)."""

    def __init__(self, success_codes: list[int] | None = None):
        self.success_codes = list(success_codes) if success_codes else [0]

    def evaluate(self, output: str, exit_code: int) -> OutputVerdict:
        if exit_code in self.success_codes:
            return OutputVerdict(ok=True)
        return OutputVerdict(ok=False, reason=f"exit code {exit_code}")


class PatternParser(OutputParser):
    """Fails when any of the regex patterns matches the output.

    Args:
        fail_patterns: Regular expressions that indicate failure
    """

    def __init__(self, fail_patterns: list[str]):
        self.fail_patterns = [re.compile(p, re.MULTILINE) for p in fail_patterns]

    def evaluate(self, output: str, exit_code: int) -> OutputVerdict:
        for pattern in self.fail_patterns:
            if pattern.search(output):
                return OutputVerdict(ok=False, reason=f"output matched /{pattern.pattern}/")
        return OutputVerdict(ok=True)


class CompositeParser(OutputParser):
    """All parsers must pass; the first failing verdict is returned."""

    def __init__(self, parsers: list[OutputParser]):
        self.parsers = parsers

    def evaluate(self, output: str, exit_code: int) -> OutputVerdict:
        for parser in self.parsers:
            verdict = parser.evaluate(output, exit_code)
            if not verdict.ok:
                return verdict
        return OutputVerdict(ok=True)


# [[ARTIFACT:image-tag=registry/app:42]]
ARTIFACT_PATTERN = re.compile(r"\[\[ARTIFACT:([A-Za-z0-9_.\-]+)=(.*?)\]\]")


def extract_artifact_markers(output: str) -> dict[str, str]:
    """Extract artifact markers from step output.

    A name emitted more than once keeps its last value.
    """
    return {name: value.strip() for name, value in ARTIFACT_PATTERN.findall(output)}
