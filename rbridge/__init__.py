"""Out-of-process R evaluation and language server bridge."""

from .app import ChunkNotFoundError, RBridgeApp
from .config import RBridgeConfig, load_config
from .errors import (
    EvaluationError,
    EvaluationTimeout,
    ProcessUnavailable,
    RBridgeError,
    RequestTimeout,
    SessionClosedError,
)

__version__ = "0.1.0"

__all__ = [
    'ChunkNotFoundError',
    'EvaluationError',
    'EvaluationTimeout',
    'ProcessUnavailable',
    'RBridgeApp',
    'RBridgeConfig',
    'RBridgeError',
    'RequestTimeout',
    'SessionClosedError',
    'load_config',
]
