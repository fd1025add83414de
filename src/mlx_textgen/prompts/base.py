from __future__ import annotations

from typing import Protocol, Sequence

from mlx_textgen.conversation import Role


class PromptRenderer(Protocol):
    """Interface for rendering a conversation into a flat prompt string."""

    supported_roles: frozenset[Role]

    def render_prompt_text(self, messages: Sequence[dict[str, str]]) -> str:
        """Render role/content pairs as the prompt text the model expects."""
        ...
