"""Batch evaluation of R code chunks in persistent sessions."""

from .artifacts import ArtifactStore, LocalArtifactStore
from .chunks import CodeChunk, find_chunk, find_chunk_in_text, is_help_request
from .evaluator import (
    HELP_PLACEHOLDER,
    BatchEvaluator,
    EnvironmentVariable,
    EvaluationResult,
    extract_tagged_lines,
)
from .program import EvaluationOptions, Sentinels

__all__ = [
    'ArtifactStore',
    'BatchEvaluator',
    'CodeChunk',
    'EnvironmentVariable',
    'EvaluationOptions',
    'EvaluationResult',
    'HELP_PLACEHOLDER',
    'LocalArtifactStore',
    'Sentinels',
    'extract_tagged_lines',
    'find_chunk',
    'find_chunk_in_text',
    'is_help_request',
]
