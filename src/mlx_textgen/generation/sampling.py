"""
Sampling policy for next-token selection.

The filters below operate on a 1-D logits vector and mark removed candidates
with ``-inf`` so that a categorical draw gives them zero probability. They are
applied by :class:`Sampler` in a fixed order: repetition penalty, then
temperature (or greedy argmax), then top-k, then top-p.
"""

from __future__ import annotations

import math
import secrets
from typing import Optional, Sequence

import mlx.core as mx

from mlx_textgen.config import SamplingConfig
from mlx_textgen.logging import get_logger

logger = get_logger(__name__)

_NEG_INF = float("-inf")


def apply_repetition_penalty(
    logits: mx.array,
    history: Sequence[int],
    penalty: float,
    context_size: Optional[int] = None,
) -> mx.array:
    """
    Divide the logit of every distinct token in ``history`` by ``penalty``.

    A token is penalized once per call no matter how often it occurs. With
    ``context_size`` only the last ``context_size`` history tokens count.

    Args:
        logits: Logits of shape (vocab_size,)
        history: Prompt and generated token ids, oldest first
        penalty: Divisor (1.0 = no penalty)
        context_size: Optional window over the end of ``history``

    Returns:
        Penalized logits
    """
    if penalty == 1.0 or not history:
        return logits
    if context_size is not None:
        history = history[-context_size:]

    vocab_size = logits.shape[-1]
    token_ids = sorted({int(t) for t in history if 0 <= int(t) < vocab_size})
    if not token_ids:
        return logits

    indices = mx.array(token_ids, dtype=mx.int32)
    selected = mx.take_along_axis(logits, indices, axis=-1)
    return mx.put_along_axis(logits, indices, selected / penalty, axis=-1)


def apply_temperature(logits: mx.array, temperature: float) -> mx.array:
    if temperature <= 0.0:
        raise ValueError("temperature must be > 0; use argmax for greedy decoding")
    if temperature == 1.0:
        return logits
    return logits / temperature


def apply_top_k(logits: mx.array, top_k: int) -> mx.array:
    """
    Keep only the ``top_k`` highest logits, mask others with -inf.

    Uses argpartition to find the indices outside the top-k and
    put_along_axis to mask them.
    """
    vocab_size = logits.shape[-1]
    if top_k <= 0 or top_k >= vocab_size:
        return logits

    mask_idx = mx.argpartition(-logits, kth=top_k - 1, axis=-1)[..., top_k:]
    return mx.put_along_axis(logits, mask_idx, mx.array(_NEG_INF, logits.dtype), axis=-1)


def apply_top_p(logits: mx.array, top_p: float) -> mx.array:
    """
    Nucleus filtering: keep the smallest set of highest-probability tokens
    whose cumulative probability reaches ``top_p``.

    Candidates are sorted by descending probability. A token is kept when the
    probability mass strictly before it is still below ``top_p``, so the most
    likely token always survives.

    Args:
        logits: Logits of shape (vocab_size,)
        top_p: Cumulative probability threshold in (0, 1] (1.0 = disabled)

    Returns:
        Logits with tokens outside the nucleus masked to -inf
    """
    if top_p >= 1.0:
        return logits

    probs = mx.softmax(logits, axis=-1)
    sorted_indices = mx.argsort(-logits, axis=-1)
    sorted_probs = mx.take_along_axis(probs, sorted_indices, axis=-1)
    mass_before = mx.cumsum(sorted_probs, axis=-1) - sorted_probs
    keep_sorted = mass_before < top_p

    # Scatter the keep flags back to vocabulary order.
    keep = mx.put_along_axis(
        mx.zeros(logits.shape, dtype=mx.bool_),
        sorted_indices,
        keep_sorted,
        axis=-1,
    )
    return mx.where(keep, logits, mx.array(_NEG_INF, logits.dtype))


class Sampler:
    """
    Choose one token id from a logits vector.

    Each sampler owns an explicit MLX PRNG key derived from ``config.seed``
    and splits it on every draw, so two samplers with the same seed produce
    the same tokens and never touch MLX's global random state.

    With ``vocab_size`` set, logits rows past the vocabulary (padding in the
    model's output layer) are dropped before any filter, so only valid ids
    are ever returned.
    """

    def __init__(self, config: SamplingConfig, vocab_size: Optional[int] = None) -> None:
        if vocab_size is not None and vocab_size < 1:
            raise ValueError("vocab_size must be >= 1 when set")
        self.config = config
        self.vocab_size = vocab_size
        seed = config.seed
        if seed is None:
            seed = secrets.randbits(32)
            logger.info("No sampling seed given; using seed %d", seed)
        self.seed = seed
        self._key = mx.random.key(seed)

    def _next_key(self) -> mx.array:
        keys = mx.random.split(self._key)
        self._key = keys[0]
        return keys[1]

    def sample(self, logits: mx.array, history: Sequence[int] = ()) -> int:
        config = self.config
        logits = logits.astype(mx.float32)
        if self.vocab_size is not None and logits.shape[-1] > self.vocab_size:
            logits = logits[..., : self.vocab_size]
        if config.repetition_penalty != 1.0:
            logits = apply_repetition_penalty(
                logits,
                history,
                config.repetition_penalty,
                config.repetition_context_size,
            )

        if config.is_greedy:
            return int(mx.argmax(logits, axis=-1).item())

        filtered = apply_temperature(logits, config.temperature)
        if config.top_k is not None:
            filtered = apply_top_k(filtered, config.top_k)
        if config.top_p is not None:
            filtered = apply_top_p(filtered, config.top_p)

        best = mx.max(filtered).item()
        if not math.isfinite(best):
            logger.warning("Sampling filters removed every candidate; falling back to argmax")
            return int(mx.argmax(logits, axis=-1).item())

        token = mx.random.categorical(filtered, key=self._next_key())
        return int(token.item())
