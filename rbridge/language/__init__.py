"""R language server session (completion and signature help)."""

from .session import LanguageSession
from .types import (
    CompletionCandidate,
    Position,
    SignatureInfo,
    chunk_position,
)

__all__ = [
    'CompletionCandidate',
    'LanguageSession',
    'Position',
    'SignatureInfo',
    'chunk_position',
]
