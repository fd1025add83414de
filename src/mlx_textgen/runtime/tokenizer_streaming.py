"""
Streaming detokenizer for incremental text output.
"""

from __future__ import annotations

from typing import Callable, Sequence

REPLACEMENT_CHAR = "\ufffd"


class StreamingDetokenizer:
    """
    Turn a growing token stream into text fragments.

    Only a short window of ids is re-decoded for each new token: the ids of
    the last emitted fragment plus everything after it. Text ending in an
    incomplete UTF-8 sequence is withheld until a later token completes it,
    so multi-token characters are never emitted half-way.
    """

    def __init__(self, decode: Callable[[Sequence[int]], str]) -> None:
        self._decode = decode
        self.reset()

    def reset(self) -> None:
        self.tokens: list[int] = []
        self._prefix_index = 0
        self._read_index = 0
        self.text = ""
        self.last_segment = ""

    def _prefix_text(self) -> str:
        if self._read_index == self._prefix_index:
            return ""
        return self._decode(self.tokens[self._prefix_index : self._read_index])

    def add_token(self, token_id: int) -> str:
        """Add one token and return the newly completed text (possibly empty)."""
        self.tokens.append(int(token_id))
        prefix_text = self._prefix_text()
        new_text = self._decode(self.tokens[self._prefix_index :])
        if len(new_text) > len(prefix_text) and not new_text.endswith(REPLACEMENT_CHAR):
            segment = new_text[len(prefix_text) :]
            self._prefix_index = self._read_index
            self._read_index = len(self.tokens)
        else:
            segment = ""
        self.text += segment
        self.last_segment = segment
        return segment

    def finalize(self) -> str:
        """Flush withheld text (an incomplete trailing character decodes as U+FFFD)."""
        prefix_text = self._prefix_text()
        new_text = self._decode(self.tokens[self._prefix_index :])
        segment = new_text[len(prefix_text) :] if len(new_text) > len(prefix_text) else ""
        self._prefix_index = self._read_index = len(self.tokens)
        self.text += segment
        self.last_segment = segment
        return segment
