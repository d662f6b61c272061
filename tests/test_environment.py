"""Tests for EnvironmentContext, template rendering and output parsers."""

import os
from pathlib import Path
from unittest.mock import patch

from shipyard.pipeline.environment import (
    EnvironmentContext,
    artifact_env_name,
    find_placeholders,
    render_template,
)
from shipyard.pipeline.outputs import (
    CompositeParser,
    ExitCodeParser,
    PatternParser,
    extract_artifact_markers,
)


class TestTemplates:
    """{placeholder} rendering."""

    def test_render_known_keys(self):
        """Happy: known placeholders are substituted."""
        assert render_template("{a}-{b}", {"a": 1, "b": "x"}) == "1-x"

    def test_unknown_and_shell_placeholders_left_alone(self):
        """Happy: unknown keys and ${VAR} survive rendering."""
        assert render_template("{nope} ${HOME} {a}", {"a": "ok", "HOME": "x"}) == "{nope} ${HOME} ok"

    def test_find_placeholders(self):
        """Happy: placeholder names are extracted, shell vars ignored."""
        assert find_placeholders("-p {ports} {image-tag} ${PATH}") == {"ports", "image-tag"}

    def test_artifact_env_name(self):
        """Happy: artifact names map to ARTIFACT_ variables."""
        assert artifact_env_name("image-tag") == "ARTIFACT_IMAGE_TAG"
        assert artifact_env_name("scan.report") == "ARTIFACT_SCAN_REPORT"


class TestEnvironmentContext:
    """Immutable environment handed to steps."""

    def test_bind_returns_new_context(self, tmp_path):
        """Happy: binding artifacts leaves the original context untouched."""
        base = EnvironmentContext(run_id="r", workdir=tmp_path)
        bound = base.bind_artifacts({"tag": "v1"})
        assert base.artifacts == {}
        assert bound.artifacts == {"tag": "v1"}
        assert bound.render("{tag}@{run_id}") == "v1@r"

    def test_process_env_layering(self, tmp_path):
        """Happy: OS env < variables < artifacts < step overrides."""
        ctx = EnvironmentContext(
            run_id="r1",
            workdir=tmp_path,
            variables={"A": "var", "B": "var"},
            artifacts={"image-tag": "reg/app:1"},
        )
        with patch.dict(os.environ, {"A": "os", "ONLY_OS": "1"}):
            env = ctx.process_env({"B": "step-{image-tag}"})
        assert env["ONLY_OS"] == "1"
        assert env["A"] == "var"
        assert env["B"] == "step-reg/app:1"
        assert env["ARTIFACT_IMAGE_TAG"] == "reg/app:1"
        assert env["SHIPYARD_RUN_ID"] == "r1"

    def test_process_env_without_inheritance(self, tmp_path):
        """Failure: inherit_os=False keeps the OS environment out."""
        ctx = EnvironmentContext(workdir=tmp_path, variables={"A": "1"}, inherit_os=False)
        with patch.dict(os.environ, {"LEAK": "x"}):
            env = ctx.process_env()
        assert env == {"A": "1"}

    def test_resolve_path(self, tmp_path):
        """Happy: relative paths resolve against the workdir."""
        ctx = EnvironmentContext(workdir=tmp_path)
        assert ctx.resolve_path("app") == tmp_path / "app"
        assert ctx.resolve_path("/abs") == Path("/abs")


class TestOutputParsers:
    """Result parsers."""

    def test_exit_code_parser(self):
        """Happy: success codes are configurable."""
        assert ExitCodeParser().evaluate("", 0).ok
        assert not ExitCodeParser().evaluate("", 1).ok
        assert ExitCodeParser([0, 1]).evaluate("", 1).ok

    def test_pattern_parser(self):
        """Failure: a matching pattern fails regardless of exit code."""
        verdict = PatternParser(["^FAIL"]).evaluate("ok\nFAIL: 2 issues\n", 0)
        assert not verdict.ok
        assert "^FAIL" in verdict.reason
        assert PatternParser(["^FAIL"]).evaluate("NOFAIL\n", 0).ok

    def test_composite_returns_first_failure(self):
        """Failure: the composite reports the first failing parser."""
        parser = CompositeParser([ExitCodeParser(), PatternParser(["x"])])
        assert parser.evaluate("x", 2).reason == "exit code 2"
        assert "/x/" in parser.evaluate("x", 0).reason
        assert parser.evaluate("y", 0).ok

    def test_extract_artifact_markers(self):
        """Happy: markers are parsed; the last value of a name wins."""
        output = "build ok\n[[ARTIFACT:image-tag=reg/app:1]]\nnoise [[ARTIFACT:digest= sha256:abc ]]\n[[ARTIFACT:image-tag=reg/app:2]]\n"
        assert extract_artifact_markers(output) == {"image-tag": "reg/app:2", "digest": "sha256:abc"}
        assert extract_artifact_markers("nothing here") == {}
