"""Tests for batch evaluation against a scripted fake R session."""

import asyncio
import json
import re
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union
from unittest.mock import Mock, patch

import pytest

from rbridge.errors import (
    EnvironmentParseError,
    EvaluationError,
    EvaluationTimeout,
    ProcessUnavailable,
    SessionClosedError,
)
from rbridge.evaluation.artifacts import LocalArtifactStore
from rbridge.evaluation.chunks import find_chunk_in_text
from rbridge.evaluation.evaluator import (
    HELP_PLACEHOLDER,
    BatchEvaluator,
    EnvironmentVariable,
    extract_tagged_lines,
    parse_environment,
    split_environment,
)
from rbridge.evaluation.program import Sentinels
from rbridge.process import SessionRegistry

SENTINELS = Sentinels.create(timestamp_ms=1700000000000, token="feedface")

ENV_JSON = json.dumps([
    {"name": "x", "type": "numeric", "size": 80, "value": " num [1:3] 1 2 3"},
    {"name": "df", "type": ["tbl_df", "tbl", "data.frame"], "size": 1200.5,
     "value": "tibble [3 x 2] (S3: tbl_df/tbl/data.frame)"},
])


class ScriptedR:
    """Answers every evaluation program written to a fake process.

    Artifact files are written into the scratch directory named in the
    program, the way the real session would.
    """

    def __init__(
        self,
        stdout_text: Union[str, List[str]] = "",
        stderr_text: str = "",
        plots: Sequence[Tuple[str, bytes]] = (),
        widgets: Sequence[Tuple[str, str]] = (),
        missing: Sequence[str] = (),
        help_html: Optional[str] = None,
        environment: str = ENV_JSON,
        exit_instead: bool = False,
        silent: bool = False,
    ):
        self.stdout_text = stdout_text
        self.stderr_text = stderr_text
        self.plots = plots
        self.widgets = widgets
        self.missing = missing
        self.help_html = help_html
        self.environment = environment
        self.exit_instead = exit_instead
        self.silent = silent
        self.programs: List[str] = []

    def attach(self, process) -> None:
        process.stdin.on_write = lambda data: self._answer(process, data)

    def _next_text(self) -> str:
        if isinstance(self.stdout_text, list):
            return self.stdout_text.pop(0)
        return self.stdout_text

    def _answer(self, process, data: bytes) -> None:
        program = data.decode("utf-8")
        if SENTINELS.completion not in program:
            return
        self.programs.append(program)
        if self.silent:
            return

        scratch = Path(re.search(r'\.rbridge_scratch <- "([^"]+)"', program).group(1))
        for name, content in self.plots:
            (scratch / name).write_bytes(content)
        for name, content in self.widgets:
            (scratch / name).write_text(content, encoding="utf-8")
        help_match = re.search(r'out = "([^"]+)", package', program)
        if help_match and self.help_html is not None:
            Path(help_match.group(1)).write_text(self.help_html, encoding="utf-8")

        if self.stderr_text:
            process.stderr.feed_data(self.stderr_text.encode("utf-8"))
        if self.exit_instead:
            asyncio.get_running_loop().call_later(0.01, process.exit, 1)
            return

        out = "".join(f"{SENTINELS.widget}{name}\n" for name, _ in self.widgets)
        out += self._next_text()
        names = [name for name, _ in self.plots] + list(self.missing)
        out += "".join(f"{SENTINELS.image}{name}\n" for name in names)
        out += f"{SENTINELS.environment}\n{self.environment}\n{SENTINELS.completion}\n"
        asyncio.get_running_loop().call_later(0.01, process.stdout.feed_data, out.encode("utf-8"))


@pytest.fixture(autouse=True)
def fixed_sentinels():
    with patch.object(Sentinels, "create", return_value=SENTINELS):
        yield


def _evaluator(config, spawner, process_factory, script, on_environment=None):
    def factory():
        process = process_factory()
        script.attach(process)
        return process

    spawner.factory = factory
    registry = SessionRegistry(config, preamble="invisible(NULL)", spawner=spawner)
    store = LocalArtifactStore(config.artifact_root)
    return BatchEvaluator(registry, store, config, on_environment), registry


async def _shutdown(registry) -> None:
    registry.kill_all()
    for _ in range(5):
        await asyncio.sleep(0)


class TestExtractTaggedLines:

    TAG = SENTINELS.image

    def test_removes_exactly_the_tagged_lines(self):
        text = (
            "[1] 1\n"
            f"{self.TAG}plot_a_1.jpg\n"
            "middle\r\n"
            f"  {self.TAG}plot_a_2.jpg\n"
            "  indented output\n"
            f"{self.TAG}plot_a_3.jpg"
        )
        remaining, names = extract_tagged_lines(text, self.TAG)
        assert names == ["plot_a_1.jpg", "plot_a_2.jpg", "plot_a_3.jpg"]
        assert remaining == "[1] 1\nmiddle\r\n  indented output\n"

    def test_images_and_widgets_keep_their_own_order(self):
        lines = []
        for i in range(3):
            lines.append(f"{SENTINELS.widget}w{i}.html")
            lines.append(f"text {i}")
            lines.append(f"{SENTINELS.image}p{i}.jpg")
        text = "\n".join(lines) + "\n"
        text, images = extract_tagged_lines(text, SENTINELS.image)
        text, widgets = extract_tagged_lines(text, SENTINELS.widget)
        assert images == ["p0.jpg", "p1.jpg", "p2.jpg"]
        assert widgets == ["w0.html", "w1.html", "w2.html"]
        assert text == "text 0\ntext 1\ntext 2\n"

    def test_tag_after_unterminated_output(self):
        text = f"x{SENTINELS.widget}widget_a_1.html\n[1] 2\n"
        remaining, names = extract_tagged_lines(text, SENTINELS.widget)
        assert names == ["widget_a_1.html"]
        assert remaining == "x\n[1] 2\n"

    def test_tag_after_unterminated_output_at_end_of_text(self):
        remaining, names = extract_tagged_lines(f"done{self.TAG}plot_a_1.jpg", self.TAG)
        assert names == ["plot_a_1.jpg"]
        assert remaining == "done"

    def test_other_tag_is_left_alone(self):
        text = f"{SENTINELS.widget}w.html\n"
        assert extract_tagged_lines(text, self.TAG) == (text, [])

    def test_no_tags(self):
        assert extract_tagged_lines("a\nb", self.TAG) == ("a\nb", [])


class TestEnvironmentParsing:

    def test_split(self):
        result, env = split_environment(f"out\n{SENTINELS.environment}\n[]\n", SENTINELS.environment)
        assert result == "out\n"
        assert env == "[]"

    def test_split_without_marker(self):
        assert split_environment("out", SENTINELS.environment) == ("out", "")

    def test_parse(self):
        variables = parse_environment(ENV_JSON)
        assert variables[0] == EnvironmentVariable("x", ("numeric",), 80.0, " num [1:3] 1 2 3")
        assert variables[1].type_name == "tbl_df, tbl, data.frame"

    def test_empty_segment(self):
        assert parse_environment("  ") == []

    def test_invalid_json(self):
        with pytest.raises(EnvironmentParseError):
            parse_environment("[{")

    def test_not_a_list(self):
        with pytest.raises(EnvironmentParseError):
            parse_environment('{"name": "x"}')

    def test_value_given_as_list(self):
        variable = EnvironmentVariable.from_dict({"name": "v", "type": [], "value": ["a", "b"]})
        assert variable.value_preview == "a b"
        assert variable.size == 0.0


class TestBatchEvaluator:

    @pytest.mark.asyncio
    async def test_text_output_and_environment(self, config, spawner, process_factory):
        script = ScriptedR(stdout_text="[1] 2\n")
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        result = await evaluator.evaluate("doc.md", "1 + 1")

        assert result.result == "[1] 2"
        assert result.image_paths == ()
        assert result.widget_paths == ()
        assert result.help_content == ""
        assert [v.name for v in result.environment] == ["x", "df"]
        assert 'evaluate::evaluate("1 + 1"' in script.programs[0]
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_plots_and_widgets_are_materialized(self, config, spawner, process_factory):
        script = ScriptedR(
            stdout_text="done\n",
            plots=[("plot_a_1.jpg", b"one"), ("plot_a_2.jpg", b"two")],
            widgets=[("widget_a_1.html", "<div>w</div>")],
        )
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        result = await evaluator.evaluate("doc.md", "plot(1); plot(2)", chunk_id="a")

        root = Path(config.artifact_root).resolve()
        assert result.result == "done"
        assert result.image_paths == ("plots/plot_a_1.jpg", "plots/plot_a_2.jpg")
        assert (root / "plots" / "plot_a_2.jpg").read_bytes() == b"two"
        assert result.widget_paths == ((root / "widgets" / "widget_a_1.html").as_uri(),)
        assert SENTINELS.widget not in result.result
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_unreadable_plot_keeps_its_name(self, config, spawner, process_factory):
        script = ScriptedR(plots=[("plot_a_1.jpg", b"one")], missing=["plot_a_2.jpg"])
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        result = await evaluator.evaluate("doc.md", "plot(1)", chunk_id="a")

        assert result.image_paths == ("plots/plot_a_1.jpg", "plot_a_2.jpg")
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_output_false_suppresses_text_and_artifacts(self, config, spawner, process_factory):
        script = ScriptedR(stdout_text="[1] 4\n", plots=[("plot_chunk_1.jpg", b"x")])
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        result = await evaluator.evaluate("doc.md", "x <- 2; x * 2", options={"output": "false"})

        assert result.result == ""
        assert result.image_paths == ()
        assert result.widget_paths == ()
        assert len(result.environment) == 2
        assert "output = FALSE" in script.programs[0]
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_missing_help_file_gives_placeholder(self, config, spawner, process_factory):
        script = ScriptedR(stdout_text="")
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        result = await evaluator.evaluate("doc.md", "?mean")

        assert result.help_content == HELP_PLACEHOLDER
        assert "Rd2HTML" in script.programs[0]
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_help_content_is_read(self, config, spawner, process_factory):
        script = ScriptedR(help_html="<h2>Arithmetic Mean</h2>")
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        result = await evaluator.evaluate("doc.md", "help(mean)", chunk_id="h")

        assert result.help_content == "<h2>Arithmetic Mean</h2>"
        assert "help_h.html" in script.programs[0]
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_stderr_fails_the_evaluation(self, config, spawner, process_factory):
        script = ScriptedR(stdout_text="partial\n", stderr_text="Error: object 'y' not found\n")
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        with pytest.raises(EvaluationError) as exc_info:
            await evaluator.evaluate("doc.md", "y")

        assert exc_info.value.stderr_text == "Error: object 'y' not found"
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_process_exit_with_stderr(self, config, spawner, process_factory):
        script = ScriptedR(stderr_text="Fatal error: cannot allocate\n", exit_instead=True)
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        with pytest.raises(EvaluationError):
            await evaluator.evaluate("doc.md", "q()")

        assert "doc.md" not in registry

    @pytest.mark.asyncio
    async def test_process_exit_without_stderr(self, config, spawner, process_factory):
        script = ScriptedR(exit_instead=True)
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        with pytest.raises(SessionClosedError):
            await evaluator.evaluate("doc.md", "q()")

    @pytest.mark.asyncio
    async def test_bad_environment_json_is_tolerated(self, config, spawner, process_factory):
        script = ScriptedR(stdout_text="ok\n", environment="[{broken")
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        result = await evaluator.evaluate("doc.md", "1")

        assert result.result == "ok"
        assert result.environment == ()
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_environment_listener(self, config, spawner, process_factory):
        listener = Mock()
        script = ScriptedR()
        evaluator, registry = _evaluator(config, spawner, process_factory, script, listener)

        await evaluator.evaluate("notes/a.md", "x <- 1")

        session_key, variables = listener.call_args[0]
        assert session_key == "notes/a.md"
        assert [v.name for v in variables] == ["x", "df"]
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_same_session_evaluations_run_in_turn(self, config, spawner, process_factory):
        script = ScriptedR(stdout_text=["first\n", "second\n"])
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        results = await asyncio.gather(
            evaluator.evaluate("doc.md", "a"),
            evaluator.evaluate("doc.md", "b"),
        )

        assert [r.result for r in results] == ["first", "second"]
        assert len(spawner.calls) == 1
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_session_persists_between_calls(self, config, spawner, process_factory):
        script = ScriptedR()
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        await evaluator.evaluate("doc.md", "x <- 1")
        await evaluator.evaluate("doc.md", "x + 1")

        assert len(spawner.calls) == 1
        assert len(script.programs) == 2
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_timeout_kills_the_session(self, config, spawner, process_factory):
        config.eval_timeout = 0.05
        script = ScriptedR(silent=True)
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        with pytest.raises(EvaluationTimeout):
            await evaluator.evaluate("doc.md", "Sys.sleep(60)")

        assert "doc.md" not in registry
        assert spawner.processes[0].terminated
        await _shutdown(registry)

    @pytest.mark.asyncio
    async def test_missing_executable(self, config, spawner, process_factory, tmp_path):
        config.r_executable_path = str(tmp_path / "absent" / "R")
        evaluator, registry = _evaluator(config, spawner, process_factory, ScriptedR())

        with pytest.raises(ProcessUnavailable):
            await evaluator.evaluate("doc.md", "1")
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_evaluate_chunk_uses_label_and_options(self, config, spawner, process_factory):
        document = "```{r}\n#| label: setup\n#| output: false\nplot(1)\n```\n"
        chunk = find_chunk_in_text(document, 3)
        script = ScriptedR(stdout_text="hidden\n")
        evaluator, registry = _evaluator(config, spawner, process_factory, script)

        result = await evaluator.evaluate_chunk("doc.md", chunk)

        assert result.result == ""
        assert "plot_setup_" in script.programs[0]
        assert 'evaluate::evaluate("plot(1)"' in script.programs[0]
        await _shutdown(registry)
