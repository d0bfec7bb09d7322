"""Batch evaluation of R code in a named session.

One call to ``BatchEvaluator.evaluate``:

1. resolves (or spawns) the session process,
2. creates a scratch directory for this evaluation's side artifacts,
3. writes the instrumented program (see ``program.py``) to the process,
4. accumulates stdout until the completion sentinel appears,
5. splits the output into text, plot and widget references, help text and
   the environment snapshot, copying artifacts into the artifact store.

Guest-side errors are ordinary result text. The call itself fails only if
the process wrote to stderr before completing, the process went away, or
a configured timeout elapsed.
"""

import asyncio
import json
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..config import RBridgeConfig
from ..errors import (
    ArtifactIOError,
    EnvironmentParseError,
    EvaluationError,
    EvaluationTimeout,
    SessionClosedError,
)
from ..framing import SentinelAccumulator
from ..process import SessionProcess, SessionRegistry, StreamListener
from .artifacts import ArtifactStore
from .chunks import CodeChunk, is_help_request
from .program import EvaluationOptions, Sentinels, build_program, safe_name

logger = logging.getLogger(__name__)

HELP_PLACEHOLDER = "Failed to retrieve help content."
DEFAULT_CHUNK_ID = "chunk"

EnvironmentCallback = Callable[[str, List["EnvironmentVariable"]], None]


@dataclass(frozen=True)
class EnvironmentVariable:
    """One entry of the session environment snapshot."""
    name: str
    type: Tuple[str, ...]
    size: float
    value_preview: str

    @property
    def type_name(self) -> str:
        return ", ".join(self.type)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EnvironmentVariable":
        raw_type = d.get("type", ())
        if isinstance(raw_type, str):
            types: Tuple[str, ...] = (raw_type,)
        else:
            types = tuple(str(t) for t in raw_type or ())
        value = d.get("value", "")
        if isinstance(value, list):
            value = " ".join(str(v) for v in value)
        try:
            size = float(d.get("size") or 0)
        except (TypeError, ValueError):
            size = 0.0
        return cls(name=str(d.get("name", "")), type=types, size=size, value_preview=str(value))


@dataclass(frozen=True)
class EvaluationResult:
    """Everything one evaluation produced. Immutable once built."""
    result: str
    image_paths: Tuple[str, ...] = ()
    widget_paths: Tuple[str, ...] = ()
    help_content: str = ""
    environment: Tuple[EnvironmentVariable, ...] = ()


def extract_tagged_lines(text: str, tag: str) -> Tuple[str, List[str]]:
    """Remove every ``tag`` occurrence with the rest of its line and collect the names.

    Output printed without a trailing newline ends up in front of the tag
    on the same line; that prefix is kept as its own line.

    Returns:
        (remaining text, names in order of appearance). The remaining text
        is the input minus the tagged line tails.
    """
    kept: List[str] = []
    names: List[str] = []
    for line in text.splitlines(keepends=True):
        index = line.find(tag)
        if index == -1:
            kept.append(line)
            continue
        name = line[index + len(tag):].strip()
        if name:
            names.append(name)
        prefix = line[:index]
        if prefix.strip():
            body = line.rstrip("\r\n")
            kept.append(prefix + line[len(body):])
    return "".join(kept), names


def split_environment(text: str, env_sentinel: str) -> Tuple[str, str]:
    """Split pre-completion output into (result part, environment JSON part)."""
    if env_sentinel in text:
        result_part, env_part = text.split(env_sentinel, 1)
        return result_part, env_part.strip()
    return text, ""


def parse_environment(raw: str) -> List[EnvironmentVariable]:
    """Parse the environment snapshot JSON.

    Raises:
        EnvironmentParseError: If the segment is not a JSON list.
    """
    if not raw.strip():
        return []
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise EnvironmentParseError(f"Invalid environment JSON: {exc}") from exc
    if not isinstance(data, list):
        raise EnvironmentParseError(f"Environment snapshot is a {type(data).__name__}, not a list")
    return [EnvironmentVariable.from_dict(item) for item in data if isinstance(item, dict)]


class _EvaluationCall(StreamListener):
    """Listener owning the accumulation buffer of one in-flight evaluation."""

    def __init__(self, sentinel: str):
        self.accumulator = SentinelAccumulator(sentinel)
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._stderr: List[bytes] = []
        self.stderr_at_completion = ""

    @property
    def stderr_text(self) -> str:
        return b"".join(self._stderr).decode("utf-8", errors="replace")

    def on_stdout(self, data: bytes) -> None:
        if self.future.done():
            return
        if self.accumulator.feed(data):
            self.stderr_at_completion = self.stderr_text
            self.future.set_result(self.accumulator.take())

    def on_stderr(self, data: bytes) -> None:
        if not self.future.done():
            self._stderr.append(data)

    def on_exit(self, error: SessionClosedError) -> None:
        if self.future.done():
            return
        stderr = self.stderr_text.strip()
        self.future.set_exception(EvaluationError(stderr) if stderr else error)


class BatchEvaluator:
    """Runs R code in named sessions and returns structured results."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: ArtifactStore,
        config: Optional[RBridgeConfig] = None,
        on_environment: Optional[EnvironmentCallback] = None,
    ):
        self._registry = registry
        self._store = store
        self._config = config or RBridgeConfig()
        self._on_environment = on_environment

    async def evaluate(
        self,
        session_key: str,
        code: str,
        chunk_id: Optional[str] = None,
        options: Optional[Union[EvaluationOptions, Mapping[str, Any]]] = None,
        help_request: Optional[bool] = None,
    ) -> EvaluationResult:
        """Evaluate ``code`` in the session identified by ``session_key``.

        Args:
            session_key: Session identity, usually the document path.
            code: R source to evaluate.
            chunk_id: Chunk identifier used in artifact names.
            options: EvaluationOptions or a raw ``{"output": "false", ...}`` mapping.
            help_request: Force or suppress help rendering. Detected from the
                code when None.

        Raises:
            ProcessUnavailable: If the session process cannot be spawned.
            EvaluationError: If the process wrote to stderr before completing.
            SessionClosedError: If the process went away mid-evaluation.
            EvaluationTimeout: If ``eval_timeout`` is configured and elapsed.
        """
        if not isinstance(options, EvaluationOptions):
            options = EvaluationOptions.from_mapping(options)
        if help_request is None:
            help_request = is_help_request(code)
        chunk_id = chunk_id or DEFAULT_CHUNK_ID

        session = await self._registry.resolve(session_key)

        scratch_root = Path(self._config.resolve_scratch_root())
        scratch_root.mkdir(parents=True, exist_ok=True)
        scratch_dir = Path(tempfile.mkdtemp(prefix="rplots-", dir=str(scratch_root)))
        help_path = scratch_dir / f"help_{safe_name(chunk_id)}.html" if help_request else None
        sentinels = Sentinels.create()
        program = build_program(
            code, chunk_id, scratch_dir, sentinels, options, self._config, help_path
        )

        output, stderr = await self._run(session, program, sentinels)
        if stderr.strip():
            raise EvaluationError(stderr.strip())

        result = self._demultiplex(output, sentinels, scratch_dir, options, help_path)
        if self._on_environment is not None:
            self._on_environment(session_key, list(result.environment))
        return result

    async def evaluate_chunk(
        self,
        session_key: str,
        chunk: CodeChunk,
    ) -> EvaluationResult:
        """Evaluate a parsed chunk with its own options and label."""
        return await self.evaluate(
            session_key,
            chunk.code,
            chunk_id=chunk.chunk_id,
            options=chunk.options,
            help_request=chunk.is_help_request,
        )

    async def _run(
        self,
        session: SessionProcess,
        program: str,
        sentinels: Sentinels,
    ) -> Tuple[str, str]:
        async with session.turn:
            call = _EvaluationCall(sentinels.completion)
            session.attach(call)
            try:
                if not call.future.done():
                    session.write(program + "\n")
                    await session.drain()
                timeout = self._config.eval_timeout
                if timeout is None:
                    output = await call.future
                else:
                    output = await asyncio.wait_for(call.future, timeout=timeout)
            except asyncio.TimeoutError:
                # A hung session would leave stale output for the next call
                logger.warning(
                    f"Evaluation in session {session.key!r} timed out after "
                    f"{self._config.eval_timeout}s; killing the session"
                )
                self._registry.kill(session.key)
                raise EvaluationTimeout(
                    f"Evaluation in session {session.key!r} timed out"
                )
            finally:
                session.detach(call)
        return output, call.stderr_at_completion

    def _demultiplex(
        self,
        output: str,
        sentinels: Sentinels,
        scratch_dir: Path,
        options: EvaluationOptions,
        help_path: Optional[Path],
    ) -> EvaluationResult:
        help_content = ""
        if help_path is not None:
            help_content = self._read_help(help_path)

        result_part, env_part = split_environment(output, sentinels.environment)
        result_part, image_names = extract_tagged_lines(result_part, sentinels.image)
        result_part, widget_names = extract_tagged_lines(result_part, sentinels.widget)

        if options.emits_output:
            result = result_part.strip()
            image_paths = [self._store_image(scratch_dir, name) for name in image_names]
            widget_paths = [self._store_widget(scratch_dir, name) for name in widget_names]
        else:
            result, image_paths, widget_paths = "", [], []

        try:
            environment = parse_environment(env_part)
        except EnvironmentParseError as exc:
            logger.warning(f"Failed to parse environment data: {exc}")
            environment = []

        return EvaluationResult(
            result=result,
            image_paths=tuple(image_paths),
            widget_paths=tuple(widget_paths),
            help_content=help_content,
            environment=tuple(environment),
        )

    def _read_help(self, help_path: Path) -> str:
        try:
            return help_path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.warning(f"Help content unavailable: {ArtifactIOError(str(help_path), exc)}")
            return HELP_PLACEHOLDER

    # A failed artifact keeps its scratch file name in the result list.
    def _store_image(self, scratch_dir: Path, name: str) -> str:
        path = scratch_dir / name
        try:
            return self._store.store_image(name, path.read_bytes())
        except OSError as exc:
            logger.warning(f"Error handling image file: {ArtifactIOError(str(path), exc)}")
            return name

    def _store_widget(self, scratch_dir: Path, name: str) -> str:
        path = scratch_dir / name
        try:
            reference = self._store.store_widget(name, path.read_text(encoding="utf-8"))
        except OSError as exc:
            logger.warning(f"Error handling widget file: {ArtifactIOError(str(path), exc)}")
            return name
        return self._store.file_url(reference)
