"""Persistent JSON-RPC session with the R language server.

The server (``R --slave -e languageserver::run()``) speaks LSP over stdio.
Output is parsed with ``ContentLengthFramer`` and routed through a
``RequestCorrelator``, so any number of requests can be outstanding at once.

Stopping the session, or the server exiting on its own, fails every
pending request with ``SessionClosedError`` instead of leaving callers
waiting.
"""

import asyncio
import itertools
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..config import RBridgeConfig
from ..correlator import RequestCorrelator
from ..errors import (
    LanguageServerError,
    ProcessUnavailable,
    RequestTimeout,
    SessionClosedError,
)
from ..framing import ContentLengthFramer
from .types import CompletionCandidate, Position, SignatureInfo, completion_items

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536
LANGUAGE_ID = "r"

# Completion was invoked explicitly (not by a trigger character).
TRIGGER_KIND_INVOKED = 1


class LanguageSession:
    """Client side of one R language server process."""

    def __init__(
        self,
        config: Optional[RBridgeConfig] = None,
        spawner: Optional[Callable[..., Any]] = None,
        on_notification: Optional[Callable[[str, Any], None]] = None,
        virtual_dir: Optional[str] = None,
    ):
        self._config = config or RBridgeConfig()
        self._spawner = spawner or asyncio.create_subprocess_exec
        self._on_notification = on_notification
        self._virtual_dir = Path(virtual_dir or tempfile.gettempdir())
        self._process: Optional[Any] = None
        self._framer = ContentLengthFramer()
        self._correlator: Optional[RequestCorrelator] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._initialized = False
        self._capabilities: Dict[str, Any] = {}
        self._document_ids = itertools.count(1)

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._correlator is not None

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def capabilities(self) -> Dict[str, Any]:
        return self._capabilities

    @property
    def correlator(self) -> Optional[RequestCorrelator]:
        return self._correlator

    async def start(self) -> None:
        """Spawn the language server and complete the initialize handshake.

        Raises:
            ProcessUnavailable: If the R executable does not exist.
        """
        if self.is_running:
            return
        if self._process is not None:
            # Server exited on its own; reap it before respawning.
            await self.stop()
        executable = self._config.resolve_executable()
        if not os.path.exists(executable):
            raise ProcessUnavailable(executable, "language-server")

        try:
            self._process = await self._spawner(
                executable,
                *self._config.language_server_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._config.child_environment(),
            )
        except OSError as exc:
            raise ProcessUnavailable(executable, "language-server") from exc

        logger.info(f"Started R language server (pid {getattr(self._process, 'pid', None)})")
        self._framer = ContentLengthFramer()
        self._correlator = RequestCorrelator(self._write, self._handle_notification)
        self._reader_task = asyncio.ensure_future(self._read_messages())
        if getattr(self._process, "stderr", None) is not None:
            self._stderr_task = asyncio.ensure_future(self._read_stderr())

        await self._initialize()

    async def _initialize(self) -> None:
        params = {
            "processId": os.getpid(),
            "rootUri": None,
            "capabilities": {},
        }
        frame = await self._request("initialize", params)
        # The handshake completes whatever the server answered.
        result = frame.get("result")
        if isinstance(result, dict):
            self._capabilities = result.get("capabilities") or {}
        elif "error" in frame:
            logger.warning(f"initialize returned an error: {frame['error']}")
        self._correlator.notify("initialized", {})
        await self._drain()
        self._initialized = True

    async def stop(self) -> None:
        """Terminate the server; pending requests fail with SessionClosedError."""
        process, self._process = self._process, None
        correlator, self._correlator = self._correlator, None
        self._initialized = False

        if correlator is not None:
            abandoned = correlator.reject_all(SessionClosedError("Language session stopped"))
            if abandoned:
                logger.info(f"Rejected {abandoned} pending language server request(s)")

        for task in (self._reader_task, self._stderr_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader_task = None
        self._stderr_task = None

        if process is not None and getattr(process, "returncode", None) is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                process.kill()
            logger.info("Stopped R language server")

    # -- transport ---------------------------------------------------------

    def _write(self, data: bytes) -> None:
        if self._process is None:
            raise SessionClosedError("Language session is not running")
        self._process.stdin.write(data)

    async def _drain(self) -> None:
        if self._process is None:
            return
        try:
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            self._on_closed(f"stdin closed: {exc}")

    async def _read_messages(self) -> None:
        stdout = self._process.stdout
        try:
            while True:
                try:
                    data = await stdout.read(READ_CHUNK_SIZE)
                except (ConnectionResetError, BrokenPipeError):
                    data = b""
                if not data:
                    break
                for message in self._framer.feed(data):
                    if self._correlator is not None:
                        self._correlator.dispatch(message)
        finally:
            self._on_closed("language server closed its output")

    async def _read_stderr(self) -> None:
        stderr = self._process.stderr
        while True:
            line = await stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug(f"[languageserver] {text}")

    def _on_closed(self, reason: str) -> None:
        if self._correlator is None:
            return
        correlator, self._correlator = self._correlator, None
        self._initialized = False
        abandoned = correlator.reject_all(SessionClosedError(reason))
        if abandoned:
            logger.warning(f"{reason}; failed {abandoned} pending request(s)")

    def _handle_notification(self, method: str, params: Any) -> None:
        if self._on_notification is not None:
            self._on_notification(method, params)
        else:
            logger.debug(f"Unhandled server notification: {method}")

    async def _request(self, method: str, params: Any) -> Dict[str, Any]:
        if self._correlator is None:
            raise SessionClosedError("Language session is not running")
        future = self._correlator.request(method, params)
        await self._drain()
        timeout = self._config.request_timeout
        if timeout is None:
            return await future
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise RequestTimeout(f"{method} timed out after {timeout}s")

    # -- public API --------------------------------------------------------

    async def did_open(self, uri: str, text: str, version: int = 1) -> None:
        """Announce a document's full text (fire-and-forget)."""
        if self._correlator is None:
            raise SessionClosedError("Language session is not running")
        self._correlator.notify("textDocument/didOpen", {
            "textDocument": {
                "uri": uri,
                "languageId": LANGUAGE_ID,
                "version": version,
                "text": text,
            }
        })
        await self._drain()

    async def open_virtual_document(self, text: str) -> str:
        """Write ``text`` to a scratch .r file, announce it and return its URI."""
        path = self._virtual_dir / f"rbridge-virtual-document-{next(self._document_ids)}.r"
        path.write_text(text, encoding="utf-8")
        uri = path.resolve().as_uri()
        await self.did_open(uri, text)
        return uri

    async def completion(self, uri: str, position: Position) -> List[CompletionCandidate]:
        """Request completion candidates at ``position``."""
        frame = await self._request("textDocument/completion", {
            "textDocument": {"uri": uri},
            "position": position.to_dict(),
            "context": {"triggerKind": TRIGGER_KIND_INVOKED},
        })
        if "error" in frame:
            logger.warning(f"Unexpected completion response: {frame['error']}")
            return []
        return [CompletionCandidate.from_dict(item) for item in completion_items(frame.get("result"))]

    async def signature_help(self, uri: str, position: Position) -> List[SignatureInfo]:
        """Request signature help at ``position``."""
        frame = await self._request("textDocument/signatureHelp", {
            "textDocument": {"uri": uri},
            "position": position.to_dict(),
        })
        result = frame.get("result")
        if "error" in frame or not isinstance(result, dict):
            if "error" in frame:
                logger.warning(f"Unexpected signatureHelp response: {frame['error']}")
            return []
        signatures = result.get("signatures") or []
        return [SignatureInfo.from_dict(sig) for sig in signatures if isinstance(sig, dict)]

    async def request(self, method: str, params: Any) -> Any:
        """Send an arbitrary request and return its result.

        Raises:
            LanguageServerError: If the server answered with an error.
        """
        frame = await self._request(method, params)
        if "error" in frame:
            raise LanguageServerError(method, frame["error"] or {})
        return frame.get("result")
