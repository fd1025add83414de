"""
Incremental decoding against a growing key/value cache.

The decoder is the only component that advances a :class:`CacheState`.
A prefill consumes the whole prompt into an empty cache, after which every
call consumes exactly one token, so ``len(cache)`` always equals the number
of positions the model has seen.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

import mlx.core as mx

from mlx_textgen.errors import ModelError
from mlx_textgen.generation.backend import ModelRunner
from mlx_textgen.generation.cache import CacheState
from mlx_textgen.logging import get_logger

logger = get_logger(__name__)


class CacheBackedDecoder:
    def __init__(self, runner: ModelRunner, *, max_context: Optional[int] = None) -> None:
        if max_context is not None and max_context < 1:
            raise ValueError("max_context must be >= 1 when set")
        self.runner = runner
        self.max_context = max_context

    def new_cache(self) -> CacheState:
        try:
            cache = self.runner.make_cache()
        except Exception as exc:
            raise ModelError(f"model runner failed to create a cache: {exc}") from exc
        if not isinstance(cache, CacheState):
            cache = CacheState(cache)
        return cache

    def step(self, tokens: Sequence[int], cache: CacheState) -> mx.array:
        """Prefill an empty cache, or decode exactly one token against a filled one."""
        self._check_usable(cache)
        if len(cache) == 0:
            return self.prefill(tokens, cache)
        if len(tokens) != 1:
            raise ModelError(
                f"decode step takes exactly one token after prefill, got {len(tokens)}"
            )
        return self.decode_step(tokens[0], cache)

    def prefill(self, prompt: Sequence[int], cache: CacheState) -> mx.array:
        self._check_usable(cache)
        if len(cache) != 0:
            raise ModelError(f"prefill requires an empty cache, cache holds {len(cache)} positions")
        if len(prompt) == 0:
            raise ModelError("cannot prefill an empty prompt")
        token_ids = [int(t) for t in prompt]
        self._check_context(cache, len(token_ids))

        logger.debug("Prefill: %d prompt tokens", len(token_ids))
        try:
            logits = self.runner.prefill(token_ids, cache)
        except ModelError:
            raise
        except Exception as exc:
            raise ModelError(f"model failed during prefill: {exc}") from exc
        return self._finish(cache, len(token_ids), logits)

    def decode_step(self, token_id: int, cache: CacheState) -> mx.array:
        self._check_usable(cache)
        if len(cache) == 0:
            raise ModelError("decode step requires a prefilled cache")
        self._check_context(cache, 1)

        try:
            logits = self.runner.decode_step(int(token_id), cache)
        except ModelError:
            raise
        except Exception as exc:
            raise ModelError(f"model failed at position {len(cache)}: {exc}") from exc
        return self._finish(cache, 1, logits)

    @staticmethod
    def _check_usable(cache: CacheState) -> None:
        if cache.discarded:
            raise ModelError("cache has been discarded and cannot be reused")

    def _check_context(self, cache: CacheState, n_tokens: int) -> None:
        if self.max_context is not None and len(cache) + n_tokens > self.max_context:
            raise ModelError(
                f"context window exceeded: {len(cache)} cached + {n_tokens} new "
                f"> {self.max_context} positions"
            )

    def _finish(self, cache: CacheState, n_tokens: int, logits: Any) -> mx.array:
        cache.advance(n_tokens)
        expected = len(cache)
        for length in cache.layer_lengths():
            if length != expected:
                raise ModelError(
                    f"cache out of sync: layer holds {length} positions, expected {expected}"
                )
        return _as_vector(logits)


def _as_vector(logits: Any) -> mx.array:
    """Normalise model output to a 1-D float32 logits vector for the last position."""
    if not isinstance(logits, mx.array):
        logits = mx.array(logits)
    if logits.ndim == 0:
        raise ModelError("model returned a scalar instead of logits")
    if logits.ndim > 1:
        logits = logits.reshape(-1, logits.shape[-1])[-1]
    return logits.astype(mx.float32)
