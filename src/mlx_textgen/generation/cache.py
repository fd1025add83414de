"""
KV cache for autoregressive generation.

``KVCache`` holds one attention layer's keys and values. ``CacheState`` is
the per-session bundle of layer caches plus the number of positions the model
has seen; it only grows, and only through the cache-backed decoder.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

import mlx.core as mx
import mlx.nn as nn


class KVCache:
    """
    Growing KV cache for one attention layer.

    Stores keys and values so they are not recomputed for every new token.
    Buffers are allocated in chunks of ``step`` positions.
    """

    step = 256

    def __init__(self) -> None:
        self.keys: Optional[mx.array] = None
        self.values: Optional[mx.array] = None
        self.offset = 0

    def update_and_fetch(self, keys: mx.array, values: mx.array) -> tuple[mx.array, mx.array]:
        """
        Append new keys/values and return everything cached so far.

        Args:
            keys: New keys of shape (B, n_kv_heads, S, head_dim)
            values: New values of shape (B, n_kv_heads, S, head_dim)
        """
        prev = self.offset
        if self.keys is None or (prev + keys.shape[2]) > self.keys.shape[2]:
            B, n_kv_heads, _, k_head_dim = keys.shape
            v_head_dim = values.shape[3]
            n_steps = (self.step + keys.shape[2] - 1) // self.step
            new_k = mx.zeros((B, n_kv_heads, n_steps * self.step, k_head_dim), keys.dtype)
            new_v = mx.zeros((B, n_kv_heads, n_steps * self.step, v_head_dim), values.dtype)
            if self.keys is not None:
                if prev % self.step != 0:
                    self.keys = self.keys[..., :prev, :]
                    self.values = self.values[..., :prev, :]
                self.keys = mx.concatenate([self.keys, new_k], axis=2)
                self.values = mx.concatenate([self.values, new_v], axis=2)
            else:
                self.keys, self.values = new_k, new_v

        self.offset += keys.shape[2]
        self.keys[..., prev : self.offset, :] = keys
        self.values[..., prev : self.offset, :] = values
        return self.keys[..., : self.offset, :], self.values[..., : self.offset, :]

    @property
    def state(self) -> tuple[Optional[mx.array], Optional[mx.array]]:
        if self.keys is None:
            return None, None
        return self.keys[..., : self.offset, :], self.values[..., : self.offset, :]

    def __len__(self) -> int:
        return self.offset

    def __bool__(self) -> bool:
        # Always truthy so ``cache or make_cache()`` keeps an empty cache.
        return True


def make_layer_caches(model: nn.Module) -> list[Any]:
    """One cache per model layer, or the model's own ``make_cache()`` when it has one."""
    if hasattr(model, "make_cache"):
        return list(model.make_cache())
    num_layers = len(model.layers) if hasattr(model, "layers") else 1
    return [KVCache() for _ in range(num_layers)]


class CacheState:
    """
    Per-session key/value state.

    ``len(state)`` is the number of positions the model has consumed. Layer
    caches are owned by the model runner's forward pass; the length counter is
    advanced by the decoder after each successful call. A discarded state has
    released its buffers and can never be used again.
    """

    def __init__(self, layers: Sequence[Any] = ()) -> None:
        self._layers: Optional[list[Any]] = list(layers)
        self._length = 0

    @property
    def layers(self) -> list[Any]:
        if self._layers is None:
            raise RuntimeError("cache state has been discarded")
        return self._layers

    @property
    def discarded(self) -> bool:
        return self._layers is None

    def advance(self, n_tokens: int) -> None:
        if n_tokens < 0:
            raise ValueError("cache length can only grow")
        self._length += n_tokens

    def layer_lengths(self) -> list[int]:
        """Lengths reported by layer caches that track one (others are skipped)."""
        lengths: list[int] = []
        for layer in self.layers:
            if hasattr(layer, "offset"):
                lengths.append(int(layer.offset))
        return lengths

    def evaluate(self) -> None:
        """Force pending lazy computations for every layer buffer."""
        arrays = [
            layer.state[0]
            for layer in self.layers
            if hasattr(layer, "state") and layer.state[0] is not None
        ]
        if arrays:
            mx.eval(arrays)

    def discard(self) -> None:
        self._layers = None

    def __len__(self) -> int:
        return self._length

    def __bool__(self) -> bool:
        return True

    def __repr__(self) -> str:
        status = "discarded" if self.discarded else f"{len(self._layers)} layers"
        return f"CacheState(length={self._length}, {status})"
