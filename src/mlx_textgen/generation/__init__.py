from __future__ import annotations

from mlx_textgen.generation.backend import MLXModelRunner, ModelRunner, SerializedRunner
from mlx_textgen.generation.cache import CacheState, KVCache
from mlx_textgen.generation.decoder import CacheBackedDecoder
from mlx_textgen.generation.generator import TextGenerator
from mlx_textgen.generation.sampling import Sampler
from mlx_textgen.generation.session import (
    GenerationResult,
    GenerationSession,
    SessionState,
    StopReason,
)

__all__ = [
    "CacheBackedDecoder",
    "CacheState",
    "GenerationResult",
    "GenerationSession",
    "KVCache",
    "MLXModelRunner",
    "ModelRunner",
    "Sampler",
    "SerializedRunner",
    "SessionState",
    "StopReason",
    "TextGenerator",
]
