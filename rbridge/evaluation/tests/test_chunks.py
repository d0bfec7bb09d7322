"""Tests for fenced chunk parsing."""

from rbridge.evaluation.chunks import (
    find_chunk,
    find_chunk_in_text,
    generate_chunk_id,
    is_chunk_start,
    is_help_request,
    parse_chunk_options,
)

DOCUMENT = """\
# Analysis

Some prose.

```{r}
#| label: setup
#| echo: false

# load data
x <- c(1, 2, 3)
mean(x)
```

More prose.

```r
plot(x)
```
"""

LINES = DOCUMENT.splitlines()


class TestChunkStart:

    def test_brace_and_plain_fences(self):
        assert is_chunk_start("```{r}")
        assert is_chunk_start("```{r setup, echo=FALSE}")
        assert is_chunk_start("```r")
        assert is_chunk_start("   ```{r}")

    def test_other_fences(self):
        assert not is_chunk_start("```python")
        assert not is_chunk_start("```")
        assert not is_chunk_start("x <- 1")


class TestFindChunk:

    def test_chunk_with_options(self):
        chunk = find_chunk(LINES, 9)
        assert chunk.start_line == 4
        assert chunk.end_line == 11
        assert chunk.label == "setup"
        assert chunk.chunk_id == "setup"
        assert chunk.options == {"label": "setup", "echo": "false"}
        assert chunk.code == "\n# load data\nx <- c(1, 2, 3)\nmean(x)"
        assert chunk.code_with_all.startswith("#| label: setup\n#| echo: false\n")

    def test_cursor_on_fences(self):
        assert find_chunk(LINES, 4).start_line == 4
        assert find_chunk(LINES, 11).start_line == 4

    def test_plain_fence_chunk_gets_generated_id(self):
        chunk = find_chunk(LINES, 16)
        assert chunk.code == "plot(x)"
        assert chunk.label is None
        assert chunk.chunk_id == generate_chunk_id(15)
        assert len(chunk.chunk_id) == 8

    def test_outside_any_chunk(self):
        assert find_chunk(LINES, 1) is None
        assert find_chunk(LINES, 13) is None

    def test_unterminated_chunk(self):
        assert find_chunk(["```{r}", "x <- 1"], 1) is None

    def test_empty_document(self):
        assert find_chunk([], 0) is None

    def test_from_text(self):
        assert find_chunk_in_text(DOCUMENT, 10).label == "setup"


class TestChunkOptions:

    def test_quotes_are_stripped(self):
        lines = ["```{r}", "#| label: 'plot-1'", '#| fig_cap: "A plot"', "plot(1)", "```"]
        assert parse_chunk_options(lines, 0) == {"label": "plot-1", "fig_cap": "A plot"}

    def test_header_ends_at_first_code_line(self):
        lines = ["```{r}", "x <- 1", "#| label: late", "```"]
        assert parse_chunk_options(lines, 0) == {}

    def test_blank_lines_and_comments_are_skipped(self):
        lines = ["```{r}", "", "# note", "#| output: false", "x", "```"]
        assert parse_chunk_options(lines, 0) == {"output": "false"}


class TestHelpRequest:

    def test_question_mark(self):
        assert is_help_request("?mean")
        assert is_help_request("? lm")

    def test_help_call(self):
        assert is_help_request("help(mean)")
        assert is_help_request("help( plot )")

    def test_ordinary_code(self):
        assert not is_help_request("mean(c(1, 2))")
        assert not is_help_request("help()")


def test_chunk_id_is_stable():
    assert generate_chunk_id(4) == generate_chunk_id(4)
    assert generate_chunk_id(4) != generate_chunk_id(5)
