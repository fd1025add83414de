from __future__ import annotations

import threading
from typing import Any, Protocol, Sequence

import mlx.core as mx
import mlx.nn as nn

from mlx_textgen.generation.cache import CacheState, make_layer_caches
from mlx_textgen.logging import get_logger

logger = get_logger(__name__)


class ModelRunner(Protocol):
    """Model-execution seam: compute next-token logits against a cache."""

    def make_cache(self) -> CacheState:
        """Return a fresh, empty cache for one session."""

    def prefill(self, token_ids: Sequence[int], cache: CacheState) -> Any:
        """Consume the whole prompt; return logits for the final position."""

    def decode_step(self, token_id: int, cache: CacheState) -> Any:
        """Consume one token; return logits for the next position."""


class MLXModelRunner:
    """
    Run an MLX language model called as ``model(inputs, cache=layers)``.

    Prompts are processed in chunks of ``prefill_step_size`` tokens, and the
    cache buffers are evaluated between chunks so peak memory stays bounded.
    """

    def __init__(self, model: nn.Module, prefill_step_size: int = 2048) -> None:
        if prefill_step_size < 1:
            raise ValueError("prefill_step_size must be >= 1")
        self.model = model
        self.prefill_step_size = prefill_step_size

    def make_cache(self) -> CacheState:
        return CacheState(make_layer_caches(self.model))

    def prefill(self, token_ids: Sequence[int], cache: CacheState) -> mx.array:
        prompt = mx.array(list(token_ids), dtype=mx.uint32)
        total = len(token_ids)
        processed = 0
        # Everything but the last chunk only fills the cache.
        while total - processed > self.prefill_step_size:
            chunk = prompt[processed : processed + self.prefill_step_size]
            self.model(chunk[None], cache=cache.layers)
            cache.evaluate()
            mx.clear_cache()
            processed += self.prefill_step_size
            logger.debug("Prefilled %d/%d prompt tokens", processed, total)

        logits = self.model(prompt[processed:][None], cache=cache.layers)
        logits = logits[0, -1, :]
        mx.eval(logits)
        return logits

    def decode_step(self, token_id: int, cache: CacheState) -> mx.array:
        inputs = mx.array([[token_id]], dtype=mx.uint32)
        logits = self.model(inputs, cache=cache.layers)
        logits = logits[0, -1, :]
        mx.eval(logits)
        return logits


class SerializedRunner:
    """Wrap a runner so that concurrent sessions take turns on the model."""

    def __init__(self, runner: ModelRunner) -> None:
        self.runner = runner
        self._lock = threading.Lock()

    def make_cache(self) -> CacheState:
        with self._lock:
            return self.runner.make_cache()

    def prefill(self, token_ids: Sequence[int], cache: CacheState) -> Any:
        with self._lock:
            return self.runner.prefill(token_ids, cache)

    def decode_step(self, token_id: int, cache: CacheState) -> Any:
        with self._lock:
            return self.runner.decode_step(token_id, cache)
