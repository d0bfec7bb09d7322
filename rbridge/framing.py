"""Stream framing for the two protocols spoken over child process pipes.

Length-prefixed mode (language session):
    Content-Length: <n>\\r\\n
    \\r\\n
    <n bytes of UTF-8 JSON>

Sentinel mode (batch evaluation):
    Free text accumulated until a per-call completion sentinel shows up.

Both framers re-derive message boundaries from buffer content only, so a
transport chunk may carry a partial message, exactly one message, or
several of them.
"""

import codecs
import enum
import json
import logging
from typing import Any, Dict, List, Optional

from .errors import ProtocolParseError

logger = logging.getLogger(__name__)

HEADER_SEPARATOR = b"\r\n\r\n"
CONTENT_LENGTH = "content-length"
CONTENT_LENGTH_PREFIX = b"content-length:"


def encode_message(message: Dict[str, Any]) -> bytes:
    """Frame a JSON-RPC message with a Content-Length header."""
    body = json.dumps(message, separators=(",", ":")).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


def _parse_header_block(block: bytes) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for line in block.decode("ascii", errors="replace").split("\r\n"):
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()
    return headers


class ContentLengthFramer:
    """Incremental parser for Content-Length framed JSON messages."""

    def __init__(self):
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> int:
        """Bytes buffered but not yet part of a complete message."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[Dict[str, Any]]:
        """Append a chunk and return every message it completes, in order.

        Malformed frames are logged and dropped; the buffer always advances
        past them so the following frames still parse.
        """
        self._buffer.extend(data)
        messages: List[Dict[str, Any]] = []
        while True:
            try:
                message = self._next_message()
            except ProtocolParseError as exc:
                logger.warning(f"Dropping malformed frame: {exc}")
                continue
            if message is None:
                break
            messages.append(message)
        return messages

    def _next_message(self) -> Optional[Dict[str, Any]]:
        header_end = self._buffer.find(HEADER_SEPARATOR)
        if header_end == -1:
            return None

        # A dropped frame's body can run into the next header line
        start = bytes(self._buffer[:header_end]).lower().rfind(CONTENT_LENGTH_PREFIX)
        if start > 0 and self._buffer[start - 2:start] != b"\r\n":
            skipped = bytes(self._buffer[:start])
            del self._buffer[:start]
            header_end -= start
            logger.warning(f"Skipped {len(skipped)} stray bytes before frame header: {skipped[:80]!r}")

        headers = _parse_header_block(bytes(self._buffer[:header_end]))
        body_start = header_end + len(HEADER_SEPARATOR)

        raw_length = headers.get(CONTENT_LENGTH)
        try:
            length = int(raw_length) if raw_length is not None else -1
        except ValueError:
            length = -1
        if length < 0:
            header = bytes(self._buffer[:header_end])
            del self._buffer[:body_start]
            raise ProtocolParseError("Missing or invalid Content-Length header", header)

        if len(self._buffer) - body_start < length:
            return None

        body = bytes(self._buffer[body_start:body_start + length])
        del self._buffer[:body_start + length]

        try:
            message = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ProtocolParseError(f"Invalid JSON payload ({exc})", body)
        if not isinstance(message, dict):
            raise ProtocolParseError("Payload is not a JSON object", body)
        return message


class AccumulatorState(enum.Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    SENTINEL_FOUND = "sentinel_found"
    PARSED = "parsed"


class SentinelAccumulator:
    """Per-evaluation text buffer that waits for a completion sentinel.

    Bytes are decoded incrementally so multi-byte characters split across
    chunks are not mangled. Only the tail that could contain a newly
    completed sentinel is rescanned after each append.
    """

    def __init__(self, sentinel: str):
        if not sentinel:
            raise ValueError("sentinel must be non-empty")
        self.sentinel = sentinel
        self.state = AccumulatorState.IDLE
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: List[str] = []
        self._length = 0
        self._tail = ""
        self._text: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.state in (AccumulatorState.SENTINEL_FOUND, AccumulatorState.PARSED)

    def feed(self, data: bytes) -> bool:
        """Append a chunk; return True once the sentinel has been seen."""
        if self.found:
            return True
        self.state = AccumulatorState.ACCUMULATING
        chunk = self._decoder.decode(data)
        if not chunk:
            return False
        self._parts.append(chunk)
        self._length += len(chunk)

        window = self._tail + chunk
        if self.sentinel in window:
            self.state = AccumulatorState.SENTINEL_FOUND
            return True
        keep = len(self.sentinel) - 1
        self._tail = window[-keep:] if keep else ""
        return False

    @property
    def text(self) -> str:
        """Everything accumulated so far."""
        if self._text is None or len(self._text) != self._length:
            self._text = "".join(self._parts)
            self._parts = [self._text] if self._text else []
        return self._text

    def take(self) -> str:
        """Return the text preceding the sentinel and mark the buffer parsed."""
        if not self.found:
            raise RuntimeError("completion sentinel has not been seen yet")
        text = self.text
        before = text.split(self.sentinel, 1)[0]
        self.state = AccumulatorState.PARSED
        self._parts = []
        self._length = 0
        self._tail = ""
        self._text = None
        return before
