"""
One generation run: conversation in, streamed text fragments out.

A :class:`GenerationSession` moves through
``init -> prefilling -> decoding -> completed | cancelled | failed``. It owns
its cache and sampler, and releases the cache as soon as it leaves the
decoding loop for any reason.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Sequence

from mlx_textgen.config import SamplingConfig
from mlx_textgen.conversation import Conversation, Message
from mlx_textgen.errors import ConfigError, GenerationError, SessionStateError, TemplateError
from mlx_textgen.generation.cache import CacheState
from mlx_textgen.generation.decoder import CacheBackedDecoder
from mlx_textgen.generation.sampling import Sampler
from mlx_textgen.logging import get_logger
from mlx_textgen.prompts.builder import PromptBuilder
from mlx_textgen.runtime.tokenizer import VocabularyAdapter

logger = get_logger(__name__)


class StopReason(str, Enum):
    END_OF_SEQUENCE = "end_of_sequence"
    MAX_TOKENS = "max_tokens"
    STOP_STRING = "stop_string"
    CANCELLED = "cancelled"


class SessionState(str, Enum):
    INIT = "init"
    PREFILLING = "prefilling"
    DECODING = "decoding"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL = frozenset({SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED})


def _as_conversation(value: Any) -> Conversation:
    """Accept a Conversation, a list of Messages or a list of role/content mappings."""
    stage = SessionState.INIT.value
    if isinstance(value, Conversation):
        return value
    if isinstance(value, (str, bytes, Mapping)):
        raise ConfigError(
            f"expected a conversation, got {type(value).__name__}", stage=stage
        )
    try:
        items = list(value)
    except TypeError as exc:
        raise ConfigError(f"expected a conversation, got {type(value).__name__}", stage=stage) from exc

    if all(isinstance(item, Message) for item in items):
        return Conversation(items)
    if all(isinstance(item, Mapping) for item in items):
        try:
            return Conversation.from_dicts(items)
        except TemplateError as exc:
            raise ConfigError(exc.message, stage=stage) from exc
    raise ConfigError(
        "conversation entries must all be Messages or role/content mappings", stage=stage
    )


def _check_prompt_tokens(prompt_tokens: Sequence[int], vocab_size: int) -> list[int]:
    stage = SessionState.INIT.value
    token_ids = [int(t) for t in prompt_tokens]
    if not token_ids:
        raise ConfigError("prompt must contain at least one token", stage=stage)
    for token_id in token_ids:
        if not 0 <= token_id < vocab_size:
            raise ConfigError(
                f"prompt token {token_id} outside vocabulary range [0, {vocab_size})", stage=stage
            )
    return token_ids


@dataclass(frozen=True)
class GenerationResult:
    tokens: tuple[int, ...]
    stop_reason: StopReason
    token_count: int
    text: str = ""
    prompt_token_count: int = 0
    elapsed: float = 0.0

    @property
    def tokens_per_second(self) -> float:
        return self.token_count / self.elapsed if self.elapsed > 0 else 0.0


class GenerationSession:
    """
    Drive prefill and decode steps for one conversation.

    Iterating the session yields non-empty text fragments as soon as they
    decode to complete characters. The stream is single-pass: a second
    ``iter()`` raises :class:`SessionStateError`. :meth:`cancel` may be called
    from another thread; it takes effect before the next model call.
    Breaking out of the loop and calling :meth:`close` counts as a cancel.

    A session starts either from a conversation, rendered by the prompt
    builder, or from already-encoded prompt ids (:meth:`from_prompt_tokens`),
    which skip the chat template entirely.
    """

    def __init__(
        self,
        conversation: Conversation | Iterable[Message | Mapping[str, Any]] | None,
        sampling: SamplingConfig,
        *,
        prompt_builder: Optional[PromptBuilder] = None,
        decoder: CacheBackedDecoder,
        vocabulary: VocabularyAdapter,
        prompt_tokens: Optional[Sequence[int]] = None,
    ) -> None:
        stage = SessionState.INIT.value
        initial_prompt: Optional[list[int]] = None
        if prompt_tokens is not None:
            if conversation is not None:
                raise ConfigError("pass either a conversation or prompt tokens, not both", stage=stage)
            initial_prompt = _check_prompt_tokens(prompt_tokens, vocabulary.vocab_size)
        else:
            if conversation is None:
                raise ConfigError("a conversation or prompt tokens are required", stage=stage)
            conversation = _as_conversation(conversation)
            if len(conversation) == 0:
                raise ConfigError("conversation must contain at least one message", stage=stage)
            if prompt_builder is None:
                raise ConfigError("a prompt builder is required to render a conversation", stage=stage)
        try:
            sampling.check()
        except ConfigError as exc:
            exc.stage = stage
            raise

        self.conversation = conversation
        self.sampling = sampling
        self.prompt_builder = prompt_builder
        self.decoder = decoder
        self.vocabulary = vocabulary
        self.sampler = Sampler(sampling, vocab_size=vocabulary.vocab_size)
        self._initial_prompt = initial_prompt

        self._state = SessionState.INIT
        self._cancel_event = threading.Event()
        self._stream: Optional[Iterator[str]] = None
        self._cache: Optional[CacheState] = None
        self._prompt_tokens: list[int] = []
        self._tokens: list[int] = []
        self._text = ""
        self._start_time: Optional[float] = None
        self._result: Optional[GenerationResult] = None

    @classmethod
    def from_prompt_tokens(
        cls,
        prompt_tokens: Sequence[int],
        sampling: SamplingConfig,
        *,
        decoder: CacheBackedDecoder,
        vocabulary: VocabularyAdapter,
    ) -> "GenerationSession":
        """Continue from encoded prompt ids (plain text completion, no chat template)."""
        return cls(
            None,
            sampling,
            decoder=decoder,
            vocabulary=vocabulary,
            prompt_tokens=prompt_tokens,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def cache(self) -> Optional[CacheState]:
        return self._cache

    @property
    def prompt_tokens(self) -> list[int]:
        return list(self._prompt_tokens)

    @property
    def tokens(self) -> list[int]:
        return list(self._tokens)

    @property
    def result(self) -> GenerationResult:
        if self._result is None:
            raise SessionStateError(
                f"no result while the session is {self._state.value}", stage=self._state.value
            )
        return self._result

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def close(self) -> None:
        """Stop the session early; a session that already finished is left as is."""
        self.cancel()
        if self._stream is not None:
            self._stream.close()
        if self._state not in _TERMINAL:
            self._finish(StopReason.CANCELLED)

    def __iter__(self) -> Iterator[str]:
        if self._stream is not None or self._state is not SessionState.INIT:
            raise SessionStateError(
                "generation stream can only be consumed once", stage=self._state.value
            )
        self._stream = self._generate()
        return self._stream

    def run(self, on_text: Optional[Callable[[str], None]] = None) -> GenerationResult:
        """Drain the stream, passing each fragment to ``on_text``, and return the result."""
        for fragment in self:
            if on_text is not None:
                on_text(fragment)
        return self.result

    def _generate(self) -> Iterator[str]:
        self._start_time = time.perf_counter()
        try:
            if self._cancel_event.is_set():
                self._finish(StopReason.CANCELLED)
                return

            self._state = SessionState.PREFILLING
            if self.conversation is None:
                self._prompt_tokens = list(self._initial_prompt)
            else:
                self._prompt_tokens = self.prompt_builder.build_prompt_tokens(self.conversation)
            history = list(self._prompt_tokens)
            self._cache = self.decoder.new_cache()
            logits = self.decoder.prefill(self._prompt_tokens, self._cache)

            self._state = SessionState.DECODING
            detokenizer = self.vocabulary.stream()
            while True:
                token = self.sampler.sample(logits, history)
                self._tokens.append(token)
                history.append(token)

                is_eos = self.vocabulary.is_eos(token)
                fragment = "" if is_eos else detokenizer.add_token(token)

                reason: Optional[StopReason] = None
                if is_eos:
                    reason = StopReason.END_OF_SEQUENCE
                elif len(self._tokens) >= self.sampling.max_tokens:
                    reason = StopReason.MAX_TOKENS
                else:
                    cut = self._find_stop_string(fragment)
                    if cut is not None:
                        fragment = fragment[:cut]
                        reason = StopReason.STOP_STRING

                if reason in (StopReason.END_OF_SEQUENCE, StopReason.MAX_TOKENS):
                    fragment += detokenizer.finalize()
                self._text += fragment

                if reason is not None:
                    self._finish(reason)
                    if fragment:
                        yield fragment
                    return

                if fragment:
                    yield fragment

                if self._cancel_event.is_set():
                    self._finish(StopReason.CANCELLED)
                    return
                logits = self.decoder.decode_step(token, self._cache)
        except GeneratorExit:
            if self._state not in _TERMINAL:
                self._finish(StopReason.CANCELLED)
            raise
        except GenerationError as exc:
            if exc.stage is None:
                exc.stage = self._state.value
            self._fail(exc)
            raise
        except Exception as exc:
            self._fail(exc)
            raise
        finally:
            self._release_cache()

    def _find_stop_string(self, fragment: str) -> Optional[int]:
        """
        Return the length of ``fragment`` to keep if a stop string just completed.

        Only occurrences that end inside the newly decoded ``fragment`` count;
        the kept text ends with the earliest such stop string.
        """
        if not fragment or not self.sampling.stop_strings:
            return None
        text = self._text + fragment
        fragment_start = len(self._text)
        best_end: Optional[int] = None
        for stop in self.sampling.stop_strings:
            start = text.find(stop, max(0, fragment_start - len(stop) + 1))
            if start < 0:
                continue
            end = start + len(stop)
            if best_end is None or end < best_end:
                best_end = end
        if best_end is None:
            return None
        return best_end - fragment_start

    def _elapsed(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.perf_counter() - self._start_time

    def _release_cache(self) -> None:
        if self._cache is not None and not self._cache.discarded:
            self._cache.discard()

    def _finish(self, reason: StopReason) -> None:
        self._release_cache()
        self._state = (
            SessionState.CANCELLED if reason is StopReason.CANCELLED else SessionState.COMPLETED
        )
        self._result = GenerationResult(
            tokens=tuple(self._tokens),
            stop_reason=reason,
            token_count=len(self._tokens),
            text=self._text,
            prompt_token_count=len(self._prompt_tokens),
            elapsed=self._elapsed(),
        )
        logger.info(
            "Generation %s: %d prompt tokens, %d generated tokens in %.2fs (%.1f tokens/s)",
            reason.value,
            self._result.prompt_token_count,
            self._result.token_count,
            self._result.elapsed,
            self._result.tokens_per_second,
        )

    def _fail(self, exc: BaseException) -> None:
        stage = self._state.value
        self._state = SessionState.FAILED
        self._release_cache()
        logger.error("Generation failed while %s: %s", stage, exc)
