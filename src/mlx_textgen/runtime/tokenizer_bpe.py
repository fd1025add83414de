"""
Pure Python ByteLevel BPE tokenizer.
"""

from __future__ import annotations

import re
from typing import Iterable, Sequence

# GPT-2 style pre-tokenization (contractions, words, numbers, punctuation runs, spaces).
_PRETOKENIZE_PATTERN = re.compile(
    r"'s|'t|'re|'ve|'m|'ll|'d| ?[^\W\d_]+| ?\d+| ?[^\s\w]+|_+|\s+(?!\S)|\s+"
)


class ByteLevelBPETokenizer:
    """ByteLevel BPE tokenizer with verbatim-matched added tokens."""

    def __init__(
        self,
        vocab: dict[str, int],
        merges: list[tuple[str, str]],
        special_tokens: dict[str, str] | None = None,
        added_tokens: Iterable[str] | None = None,
        skipped_tokens: Iterable[str] | None = None,
        chat_template: str | None = None,
    ):
        """
        Initialize ByteLevel BPE tokenizer.

        Args:
            vocab: Dictionary mapping token strings to token IDs (including added tokens)
            merges: List of BPE merge pairs (tuple of two strings)
            special_tokens: Mapping of role ("eos_token", "bos_token", "pad_token",
                "unk_token") to token string
            added_tokens: Token strings matched verbatim in input text before BPE
                (chat markers such as ``<|im_start|>``)
            skipped_tokens: Added tokens dropped by ``decode(skip_special_tokens=True)``;
                defaults to every added token
            chat_template: Optional Jinja chat template shipped with the tokenizer
        """
        self.vocab = dict(vocab)
        self.merges = list(merges)
        self.id_to_token: dict[int, str] = {v: k for k, v in self.vocab.items()}
        self.bpe_ranks: dict[tuple[str, str], int] = {
            (pair[0], pair[1]): idx for idx, pair in enumerate(self.merges)
        }

        self.special_tokens = dict(special_tokens or {})
        added = set(added_tokens or ())
        added.update(t for t in self.special_tokens.values() if t in self.vocab)
        self.added_tokens = frozenset(t for t in added if t in self.vocab)
        skipped = self.added_tokens if skipped_tokens is None else set(skipped_tokens)
        skipped = set(skipped) | {t for t in self.special_tokens.values() if t in self.vocab}
        self.added_token_ids = frozenset(self.vocab[t] for t in self.added_tokens)
        self.special_token_ids = frozenset(self.vocab[t] for t in skipped if t in self.vocab)
        self._added_pattern = (
            re.compile(
                "("
                + "|".join(re.escape(t) for t in sorted(self.added_tokens, key=len, reverse=True))
                + ")"
            )
            if self.added_tokens
            else None
        )

        self.chat_template = chat_template

        self._bpe_cache: dict[str, list[str]] = {}
        self._byte_encoder = self._make_byte_encoder()
        self._byte_decoder = {v: k for k, v in self._byte_encoder.items()}

    @staticmethod
    def _make_byte_encoder() -> dict[int, str]:
        """
        Create GPT-2 style byte encoder.

        Maps bytes (0-255) to Unicode characters. The space character (0x20)
        maps to 'Ġ' (U+0120).
        """
        byte_encoder: dict[int, str] = {}
        n = 0

        for i in range(256):
            if 33 <= i <= 126 or 161 <= i <= 172 or 174 <= i <= 255:
                byte_encoder[i] = chr(i)
            else:
                byte_encoder[i] = chr(256 + n)
                n += 1

        return byte_encoder

    def _byte_encode(self, text: str) -> str:
        return "".join(self._byte_encoder[b] for b in text.encode("utf-8"))

    def _byte_values(self, byte_chars: str) -> bytes:
        values = bytearray()
        for char in byte_chars:
            byte_val = self._byte_decoder.get(char)
            if byte_val is not None:
                values.append(byte_val)
            else:
                values.extend(char.encode("utf-8"))
        return bytes(values)

    def _apply_bpe(self, word: str) -> list[str]:
        """Apply BPE merges to one pre-tokenized word."""
        cached = self._bpe_cache.get(word)
        if cached is not None:
            return cached

        word_chars = list(word)
        while len(word_chars) > 1:
            pairs = list(zip(word_chars[:-1], word_chars[1:]))
            bigram = min(pairs, key=lambda pair: self.bpe_ranks.get(pair, float("inf")))
            if bigram not in self.bpe_ranks:
                break

            merged: list[str] = []
            i = 0
            while i < len(word_chars):
                if i < len(word_chars) - 1 and (word_chars[i], word_chars[i + 1]) == bigram:
                    merged.append(word_chars[i] + word_chars[i + 1])
                    i += 2
                else:
                    merged.append(word_chars[i])
                    i += 1
            word_chars = merged

        self._bpe_cache[word] = word_chars
        return word_chars

    def _split_added(self, text: str) -> list[tuple[str, bool]]:
        if self._added_pattern is None:
            return [(text, False)]
        pieces: list[tuple[str, bool]] = []
        for piece in self._added_pattern.split(text):
            if not piece:
                continue
            pieces.append((piece, piece in self.added_tokens))
        return pieces

    def encode(
        self,
        text: str,
        add_special_tokens: bool = False,
    ) -> list[int]:
        """Encode text to token IDs. Raises ValueError for bytes missing from the vocabulary."""
        token_ids: list[int] = []
        for piece, is_added in self._split_added(text):
            if is_added:
                token_ids.append(self.vocab[piece])
                continue
            for word in _PRETOKENIZE_PATTERN.findall(piece):
                for token in self._apply_bpe(self._byte_encode(word)):
                    token_id = self.vocab.get(token)
                    if token_id is None:
                        raise ValueError(
                            f"Token {token!r} not found in vocabulary "
                            f"(vocabulary size {len(self.vocab)})."
                        )
                    token_ids.append(token_id)

        if add_special_tokens and self.bos_token_id is not None:
            token_ids.insert(0, self.bos_token_id)

        return token_ids

    def decode(
        self,
        token_ids: Sequence[int] | int,
        skip_special_tokens: bool = True,
    ) -> str:
        """Decode token IDs to text. Raises ValueError for unknown ids."""
        if isinstance(token_ids, int):
            token_ids = [token_ids]

        parts: list[str] = []
        pending = bytearray()
        for token_id in token_ids:
            token_str = self.id_to_token.get(int(token_id))
            if token_str is None:
                raise ValueError(
                    f"Token ID {token_id} not found in vocabulary "
                    f"(vocabulary size {len(self.vocab)})."
                )
            if skip_special_tokens and int(token_id) in self.special_token_ids:
                continue
            if int(token_id) in self.added_token_ids:
                parts.append(pending.decode("utf-8", errors="replace"))
                pending.clear()
                parts.append(token_str)
                continue
            pending.extend(self._byte_values(token_str))

        parts.append(pending.decode("utf-8", errors="replace"))
        return "".join(parts)

    def token_to_id(self, token: str) -> int | None:
        return self.vocab.get(token)

    def _special_id(self, role: str) -> int | None:
        token = self.special_tokens.get(role)
        if token is None:
            return None
        return self.vocab.get(token)

    @property
    def vocab_size(self) -> int:
        """One past the largest token id."""
        return max(self.id_to_token, default=-1) + 1

    @property
    def eos_token(self) -> str | None:
        return self.special_tokens.get("eos_token")

    @property
    def bos_token(self) -> str | None:
        return self.special_tokens.get("bos_token")

    @property
    def eos_token_id(self) -> int | None:
        return self._special_id("eos_token")

    @property
    def bos_token_id(self) -> int | None:
        return self._special_id("bos_token")

    @property
    def pad_token_id(self) -> int | None:
        return self._special_id("pad_token")

    def get_vocab(self) -> dict[str, int]:
        return self.vocab.copy()
