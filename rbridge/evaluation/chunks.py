"""Locating and parsing fenced R chunks in markdown documents."""

import hashlib
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

CHUNK_START = re.compile(r"^```\{?r")
OPTION_LINE = re.compile(r"^#\|\s*(\w+)\s*:\s*(.*)$")
HELP_PATTERNS = (
    re.compile(r"\?\s*\w+"),
    re.compile(r"help\s*\(\s*\w+\s*\)"),
)


@dataclass
class CodeChunk:
    """A fenced R chunk.

    Attributes:
        start_line: Line index of the opening fence.
        end_line: Line index of the closing fence.
        code: Chunk body without ``#|`` option lines (what gets evaluated).
        code_with_all: Full chunk body (what the language server sees).
        label: Value of an existing ``label`` option, if any.
        options: All ``#|`` options, quotes stripped.
    """
    start_line: int
    end_line: int
    code: str
    code_with_all: str
    label: Optional[str] = None
    options: Dict[str, str] = field(default_factory=dict)

    @property
    def chunk_id(self) -> str:
        return self.label or generate_chunk_id(self.start_line)

    @property
    def is_help_request(self) -> bool:
        return is_help_request(self.code)


def is_chunk_start(line: str) -> bool:
    return bool(CHUNK_START.match(line.strip()))


def is_help_request(code: str) -> bool:
    """True when the code asks for R documentation (``?topic`` or ``help(topic)``)."""
    return any(pattern.search(code) for pattern in HELP_PATTERNS)


def generate_chunk_id(start_line: int) -> str:
    return hashlib.sha256(str(start_line).encode("utf-8")).hexdigest()[:8]


def parse_chunk_options(lines: Sequence[str], start_line: int) -> Dict[str, str]:
    """Read the ``#| key: value`` header that follows an opening fence.

    Blank lines and plain comments are skipped; the header ends at the
    first line of code.
    """
    options: Dict[str, str] = {}
    for raw in lines[start_line + 1:]:
        line = raw.strip()
        if line.startswith("#|"):
            match = OPTION_LINE.match(line)
            if match:
                value = re.sub(r"^[\"']|[\"']$", "", match.group(2))
                options[match.group(1)] = value
        elif line == "" or line.startswith("#"):
            continue
        else:
            break
    return options


def find_chunk(lines: Sequence[str], cursor_line: int) -> Optional[CodeChunk]:
    """Return the chunk enclosing ``cursor_line``, or None.

    Searches upward for an opening fence and downward for the closing one;
    an unterminated chunk counts as no chunk.
    """
    if not lines:
        return None
    start = min(cursor_line, len(lines) - 1)
    while start >= 0 and not is_chunk_start(lines[start]):
        start -= 1
    if start < 0:
        return None

    end = start + 1
    while end < len(lines) and not lines[end].startswith("```"):
        end += 1
    if end >= len(lines) or cursor_line > end:
        return None

    body = list(lines[start + 1:end])
    code_lines: List[str] = [line for line in body if not line.strip().startswith("#|")]
    options = parse_chunk_options(lines, start)

    return CodeChunk(
        start_line=start,
        end_line=end,
        code="\n".join(code_lines),
        code_with_all="\n".join(body),
        label=options.get("label"),
        options=options,
    )


def find_chunk_in_text(text: str, cursor_line: int) -> Optional[CodeChunk]:
    return find_chunk(text.splitlines(), cursor_line)
