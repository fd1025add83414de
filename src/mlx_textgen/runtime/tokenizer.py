from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Protocol, Sequence

from mlx_textgen.errors import ConfigError, DecodeError, EncodeError
from mlx_textgen.runtime.tokenizer_streaming import StreamingDetokenizer


class TokenizerProtocol(Protocol):
    """Protocol for tokenizer implementations used by the generation loop."""

    def encode(self, text: str) -> list[int]:
        """Encode text into token IDs."""
        ...

    def decode(self, token_ids: Sequence[int]) -> str:
        """Decode token IDs into text."""
        ...


class DecodeBoundary(str, Enum):
    """Which prefixes of a token stream decode to complete text."""

    TOKEN_ALIGNED = "token_aligned"
    BYTE_FRAGMENT = "byte_fragment"


class VocabularyAdapter:
    """
    Checked text <-> token id conversion over a wrapped tokenizer.

    Any tokenizer with ``encode``/``decode`` works (the bundled
    ``ByteLevelBPETokenizer`` or a Hugging Face style tokenizer). Ids are
    range-checked in both directions so a vocabulary mismatch surfaces as
    :class:`EncodeError` / :class:`DecodeError` instead of garbage text.

    The adapter is byte-fragment aware: a single token may carry part of a
    UTF-8 character, so callers that stream output should decode through
    :meth:`stream` rather than decoding each id on its own.
    """

    boundary = DecodeBoundary.BYTE_FRAGMENT

    def __init__(
        self,
        tokenizer: TokenizerProtocol,
        *,
        eos_token_ids: Iterable[int] | None = None,
        vocab_size: Optional[int] = None,
    ) -> None:
        self.tokenizer = tokenizer
        self._vocab_size = vocab_size if vocab_size is not None else self._infer_vocab_size(tokenizer)

        eos_ids: list[int] = []
        tokenizer_eos = getattr(tokenizer, "eos_token_id", None)
        if tokenizer_eos is not None:
            eos_ids.append(int(tokenizer_eos))
        for token_id in eos_token_ids or ():
            if int(token_id) not in eos_ids:
                eos_ids.append(int(token_id))
        if not eos_ids:
            raise ConfigError("tokenizer defines no end-of-sequence token")
        self._eos_ids = tuple(eos_ids)

    @staticmethod
    def _infer_vocab_size(tokenizer: TokenizerProtocol) -> int:
        if hasattr(tokenizer, "get_vocab"):
            vocab = tokenizer.get_vocab()
            if vocab:
                return max(int(v) for v in vocab.values()) + 1
        size = getattr(tokenizer, "vocab_size", None)
        if size is None:
            raise ConfigError("cannot determine vocabulary size of tokenizer")
        return int(size)

    @property
    def vocab_size(self) -> int:
        return self._vocab_size

    @property
    def eos_ids(self) -> tuple[int, ...]:
        return self._eos_ids

    def eos_id(self) -> int:
        return self._eos_ids[0]

    def is_eos(self, token_id: int) -> bool:
        return int(token_id) in self._eos_ids

    def pad_id(self) -> Optional[int]:
        pad = getattr(self.tokenizer, "pad_token_id", None)
        return None if pad is None else int(pad)

    def token_to_id(self, token: str) -> Optional[int]:
        if hasattr(self.tokenizer, "token_to_id"):
            return self.tokenizer.token_to_id(token)
        if hasattr(self.tokenizer, "get_vocab"):
            return self.tokenizer.get_vocab().get(token)
        return None

    def encode(self, text: str) -> list[int]:
        """Encode text without adding BOS/EOS; the chat template owns special tokens."""
        if not isinstance(text, str):
            raise EncodeError(f"expected str, got {type(text).__name__}")
        try:
            try:
                ids = self.tokenizer.encode(text, add_special_tokens=False)
            except TypeError:
                ids = self.tokenizer.encode(text)
        except EncodeError:
            raise
        except Exception as exc:
            raise EncodeError(f"cannot encode text: {exc}") from exc

        if hasattr(ids, "ids"):
            ids = ids.ids
        token_ids = [int(t) for t in ids]
        for token_id in token_ids:
            if not 0 <= token_id < self._vocab_size:
                raise EncodeError(
                    f"tokenizer produced id {token_id} outside vocabulary range [0, {self._vocab_size})"
                )
        return token_ids

    def decode(self, token_ids: Sequence[int], skip_special_tokens: bool = True) -> str:
        ids = [int(t) for t in token_ids]
        for token_id in ids:
            if not 0 <= token_id < self._vocab_size:
                raise DecodeError(
                    f"token id {token_id} outside vocabulary range [0, {self._vocab_size})"
                )
        try:
            try:
                return self.tokenizer.decode(ids, skip_special_tokens=skip_special_tokens)
            except TypeError:
                return self.tokenizer.decode(ids)
        except Exception as exc:
            raise DecodeError(f"cannot decode token ids: {exc}") from exc

    def stream(self) -> StreamingDetokenizer:
        """Return a fresh incremental decoder over this vocabulary."""
        return StreamingDetokenizer(self.decode)
