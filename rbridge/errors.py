"""Error types for the R session bridge.

Only process availability, error-stream output, session teardown and
caller-configured timeouts reach callers. Parse and artifact errors are
raised and caught locally so they can be logged with a uniform message
before the caller receives a degraded value.
"""

from typing import Optional


class RBridgeError(Exception):
    """Base class for rbridge errors."""
    pass


class ProcessUnavailable(RBridgeError):
    """The configured executable does not exist on disk.

    Raised at spawn time. The session map is left unmodified.
    """

    def __init__(self, executable: str, session_key: Optional[str] = None):
        self.executable = executable
        self.session_key = session_key
        message = f"R executable not found at {executable}"
        if session_key:
            message += f" (session {session_key!r})"
        super().__init__(message)


class ProtocolParseError(RBridgeError):
    """A frame could not be parsed (bad header or invalid JSON payload)."""

    def __init__(self, reason: str, raw: bytes = b""):
        self.reason = reason
        self.raw = raw
        preview = raw[:80].decode("utf-8", errors="replace") if raw else ""
        super().__init__(f"{reason}: {preview!r}" if preview else reason)


class EvaluationError(RBridgeError):
    """The R process wrote to its error stream during an evaluation."""

    def __init__(self, stderr_text: str):
        self.stderr_text = stderr_text
        super().__init__(stderr_text)


class ArtifactIOError(RBridgeError):
    """A plot, widget or help file could not be read after evaluation."""

    def __init__(self, path: str, cause: Optional[BaseException] = None):
        self.path = path
        self.cause = cause
        super().__init__(f"Cannot read artifact {path}: {cause}")


class EnvironmentParseError(RBridgeError):
    """The environment snapshot segment is not valid JSON."""
    pass


class SessionClosedError(RBridgeError):
    """The process backing a pending request or evaluation went away."""
    pass


class EvaluationTimeout(RBridgeError):
    """A caller-configured timeout elapsed before the work completed."""
    pass


class LanguageServerError(RBridgeError):
    """The language server answered a request with a JSON-RPC error."""

    def __init__(self, method: str, error: dict):
        self.method = method
        self.code = error.get("code")
        self.error = error
        super().__init__(f"{method} failed: {error.get('message', 'Unknown error')}")


class RequestTimeout(RBridgeError):
    """A language server request outlived the configured request timeout."""
    pass
