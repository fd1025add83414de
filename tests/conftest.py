"""
Pytest configuration and shared fixtures for mlx-textgen tests.

Nothing here loads a real model: the vocabulary maps token id N to byte N
(plus a few chat markers), and the model runner replays a script of favoured
token ids.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Sequence

import mlx.core as mx
import pytest

from mlx_textgen.config import SamplingConfig
from mlx_textgen.conversation import Conversation
from mlx_textgen.generation.cache import CacheState
from mlx_textgen.generation.decoder import CacheBackedDecoder
from mlx_textgen.generation.session import GenerationSession
from mlx_textgen.prompts.builder import PromptBuilder
from mlx_textgen.prompts.families import ModelFamily, make_renderer
from mlx_textgen.runtime.tokenizer import VocabularyAdapter
from mlx_textgen.runtime.tokenizer_bpe import ByteLevelBPETokenizer

EOS_ID = 256
IM_START_ID = 257
IM_END_ID = 258
SPECIAL_TOKENS = {"<|endoftext|>": EOS_ID, "<|im_start|>": IM_START_ID, "<|im_end|>": IM_END_ID}
VOCAB_SIZE = 259


def byte_vocab() -> dict[str, int]:
    encoder = ByteLevelBPETokenizer._make_byte_encoder()
    vocab = {char: byte for byte, char in encoder.items()}
    vocab.update(SPECIAL_TOKENS)
    return vocab


def make_byte_tokenizer() -> ByteLevelBPETokenizer:
    return ByteLevelBPETokenizer(
        vocab=byte_vocab(),
        merges=[],
        special_tokens={"eos_token": "<|endoftext|>"},
        added_tokens=SPECIAL_TOKENS.keys(),
    )


def one_hot_logits(token_id: int, vocab_size: int = VOCAB_SIZE) -> list[float]:
    values = [-10.0] * vocab_size
    values[token_id] = 10.0
    return values


class CountingLayer:
    """Stand-in layer cache that only tracks how many positions it holds."""

    def __init__(self) -> None:
        self.offset = 0


class ScriptedRunner:
    """
    Model runner that favours a scripted token at each call.

    Call 0 (prefill) favours ``script[0]``, decode step i favours
    ``script[i]``; the last entry repeats once the script runs out.
    ``fail_at`` makes the call with that index raise ``RuntimeError``.
    """

    def __init__(
        self,
        script: Sequence[int],
        *,
        num_layers: int = 2,
        fail_at: int | None = None,
        vocab_size: int = VOCAB_SIZE,
    ) -> None:
        self.script = list(script)
        self.num_layers = num_layers
        self.fail_at = fail_at
        self.vocab_size = vocab_size
        self.calls: list[tuple[str, Any]] = []

    def _logits(self) -> list[float]:
        index = len(self.calls) - 1
        if self.fail_at is not None and index == self.fail_at:
            raise RuntimeError("scripted failure")
        token = self.script[min(index, len(self.script) - 1)]
        return one_hot_logits(token, self.vocab_size)

    def make_cache(self) -> CacheState:
        return CacheState([CountingLayer() for _ in range(self.num_layers)])

    def prefill(self, token_ids: Sequence[int], cache: CacheState) -> mx.array:
        self.calls.append(("prefill", list(token_ids)))
        logits = self._logits()
        for layer in cache.layers:
            layer.offset += len(token_ids)
        # Full (batch, positions, vocab) output; the decoder keeps the last row.
        rows = [[0.0] * self.vocab_size] * (len(token_ids) - 1) + [logits]
        return mx.array([rows])

    def decode_step(self, token_id: int, cache: CacheState) -> mx.array:
        self.calls.append(("decode", token_id))
        logits = self._logits()
        for layer in cache.layers:
            layer.offset += 1
        return mx.array(logits)

    @property
    def decode_calls(self) -> int:
        return sum(1 for kind, _ in self.calls if kind == "decode")


@pytest.fixture
def byte_tokenizer() -> ByteLevelBPETokenizer:
    return make_byte_tokenizer()


@pytest.fixture
def vocabulary(byte_tokenizer: ByteLevelBPETokenizer) -> VocabularyAdapter:
    return VocabularyAdapter(byte_tokenizer)


@pytest.fixture
def chatml_builder(vocabulary: VocabularyAdapter) -> PromptBuilder:
    return PromptBuilder(make_renderer(ModelFamily.CHATML), vocabulary)


@pytest.fixture
def user_conversation() -> Conversation:
    conversation = Conversation()
    conversation.add("user", "Hi")
    return conversation


@pytest.fixture
def multi_turn_conversation() -> Conversation:
    return Conversation.from_dicts(
        [
            {"role": "system", "content": "You are terse."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello."},
            {"role": "user", "content": "Bye"},
        ]
    )


@pytest.fixture
def make_session(
    chatml_builder: PromptBuilder,
    vocabulary: VocabularyAdapter,
    user_conversation: Conversation,
) -> Callable[..., tuple[GenerationSession, ScriptedRunner]]:
    """Build a greedy session over a scripted runner; keyword args override sampling."""

    def factory(
        script: Sequence[int],
        *,
        conversation: Conversation | None = None,
        runner: ScriptedRunner | None = None,
        max_context: int | None = None,
        **sampling: Any,
    ) -> tuple[GenerationSession, ScriptedRunner]:
        runner = runner or ScriptedRunner(script)
        config = SamplingConfig(**{"temperature": 0.0, "seed": 0, **sampling})
        session = GenerationSession(
            conversation if conversation is not None else user_conversation,
            config,
            prompt_builder=chatml_builder,
            decoder=CacheBackedDecoder(runner, max_context=max_context),
            vocabulary=vocabulary,
        )
        return session, runner

    return factory


@pytest.fixture
def model_dir(tmp_path: Path) -> Path:
    """A resolvable local model directory with a byte-level tokenizer."""
    root = tmp_path / "tiny-chatml-model"
    root.mkdir()
    tokenizer_json = {
        "model": {"type": "BPE", "vocab": {k: v for k, v in byte_vocab().items() if v < 256}, "merges": []},
        "added_tokens": [
            {"id": token_id, "content": content, "special": True}
            for content, token_id in SPECIAL_TOKENS.items()
        ],
    }
    (root / "tokenizer.json").write_text(json.dumps(tokenizer_json), encoding="utf-8")
    (root / "tokenizer_config.json").write_text(
        json.dumps({"eos_token": "<|endoftext|>"}), encoding="utf-8"
    )
    (root / "config.json").write_text(
        json.dumps({"model_type": "qwen2", "vocab_size": VOCAB_SIZE, "max_position_embeddings": 128}),
        encoding="utf-8",
    )
    (root / "generation_config.json").write_text(
        json.dumps({"eos_token_id": [EOS_ID, IM_END_ID], "temperature": 0.0, "max_new_tokens": 16}),
        encoding="utf-8",
    )
    (root / "model.safetensors").write_bytes(b"")
    return root
