"""Exception taxonomy for the generation core.

Every failure the core surfaces derives from :class:`GenerationError`. Errors
raised while a session is running carry the session state they occurred in
(``stage``) so callers can tell a prompt problem from a model failure without
parsing messages.
"""

from __future__ import annotations

from typing import Optional


class GenerationError(Exception):
    """Base class for errors raised by mlx-textgen."""

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class ConfigError(GenerationError, ValueError):
    """Raised for invalid sampling parameters, config files or an empty conversation."""


class TemplateError(GenerationError, ValueError):
    """Raised when a conversation cannot be rendered by the active chat template."""


class EncodeError(GenerationError, ValueError):
    """Raised when text cannot be encoded by the vocabulary."""


class DecodeError(GenerationError, ValueError):
    """Raised when token ids cannot be decoded (out of range or rejected)."""


class ModelError(GenerationError, RuntimeError):
    """Raised when the model runner rejects a request or fails while executing it."""


class FetchError(GenerationError, OSError):
    """Raised when model files cannot be resolved locally or downloaded."""


class SessionStateError(GenerationError, RuntimeError):
    """Raised when a generation session is used outside its lifecycle."""
