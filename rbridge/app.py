"""Application context tying sessions, evaluation and the language server together.

Usage:
    from rbridge.app import RBridgeApp

    async with RBridgeApp(load_config()) as app:
        result = await app.evaluate("notes/analysis.md", "summary(cars)")
"""

import logging
from pathlib import Path
from typing import Callable, List, Mapping, Optional

from .config import RBridgeConfig
from .evaluation.artifacts import ArtifactStore, LocalArtifactStore
from .evaluation.chunks import CodeChunk, find_chunk_in_text
from .evaluation.evaluator import BatchEvaluator, EnvironmentVariable, EvaluationResult
from .language.session import LanguageSession
from .language.types import CompletionCandidate, SignatureInfo, chunk_position
from .process import SessionRegistry

logger = logging.getLogger(__name__)


class ChunkNotFoundError(LookupError):
    """No fenced R chunk encloses the requested line."""

    def __init__(self, document: str, line: int):
        self.document = document
        self.line = line
        super().__init__(f"No R code chunk found at line {line} of {document}")


class RBridgeApp:
    """Owns the session registry and the language session for one host."""

    def __init__(
        self,
        config: Optional[RBridgeConfig] = None,
        store: Optional[ArtifactStore] = None,
        registry: Optional[SessionRegistry] = None,
        language: Optional[LanguageSession] = None,
        on_environment: Optional[Callable[[str, List[EnvironmentVariable]], None]] = None,
    ):
        self.config = config or RBridgeConfig()
        self.store = store or LocalArtifactStore(self.config.artifact_root)
        self.registry = registry or SessionRegistry(self.config)
        self.evaluator = BatchEvaluator(
            self.registry, self.store, self.config, on_environment=on_environment
        )
        self.language = language or LanguageSession(self.config)

    async def __aenter__(self) -> "RBridgeApp":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def evaluate(
        self,
        session_key: str,
        code: str,
        chunk_id: Optional[str] = None,
        options: Optional[Mapping[str, str]] = None,
    ) -> EvaluationResult:
        return await self.evaluator.evaluate(session_key, code, chunk_id=chunk_id, options=options)

    def chunk_at(self, document: str, line: int) -> CodeChunk:
        text = Path(document).read_text(encoding="utf-8")
        chunk = find_chunk_in_text(text, line)
        if chunk is None:
            raise ChunkNotFoundError(document, line)
        return chunk

    async def run_chunk(self, document: str, line: int) -> EvaluationResult:
        """Evaluate the chunk at ``line``; the session is keyed by the document path."""
        chunk = self.chunk_at(document, line)
        logger.debug(f"Running chunk {chunk.chunk_id} (lines {chunk.start_line}-{chunk.end_line}) of {document}")
        return await self.evaluator.evaluate_chunk(str(Path(document).resolve()), chunk)

    async def _open_chunk(self, document: str, line: int) -> CodeChunk:
        chunk = self.chunk_at(document, line)
        await self.language.start()
        return chunk

    async def complete(self, document: str, line: int, column: int) -> List[CompletionCandidate]:
        chunk = await self._open_chunk(document, line)
        uri = await self.language.open_virtual_document(chunk.code_with_all)
        return await self.language.completion(uri, chunk_position(line, chunk.start_line, column))

    async def signature_help(self, document: str, line: int, column: int) -> List[SignatureInfo]:
        chunk = await self._open_chunk(document, line)
        uri = await self.language.open_virtual_document(chunk.code_with_all)
        return await self.language.signature_help(uri, chunk_position(line, chunk.start_line, column))

    async def close(self) -> None:
        """Kill every session process and stop the language server."""
        await self.registry.close_all()
        await self.language.stop()
