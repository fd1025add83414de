from __future__ import annotations

from mlx_textgen.conversation import Conversation
from mlx_textgen.errors import TemplateError
from mlx_textgen.prompts.base import PromptRenderer
from mlx_textgen.runtime.tokenizer import VocabularyAdapter


class PromptBuilder:
    """Render a conversation with the active template and encode it to prompt ids."""

    def __init__(self, renderer: PromptRenderer, vocabulary: VocabularyAdapter) -> None:
        self.renderer = renderer
        self.vocabulary = vocabulary

    def render(self, conversation: Conversation) -> str:
        if len(conversation) == 0:
            raise TemplateError("cannot render an empty conversation")
        supported = self.renderer.supported_roles
        for message in conversation:
            if message.role not in supported:
                raise TemplateError(
                    f"role {message.role.value!r} is not supported by the active chat template"
                )
        return self.renderer.render_prompt_text(
            [{"role": m.role.value, "content": m.content} for m in conversation]
        )

    def build_prompt_tokens(self, conversation: Conversation) -> list[int]:
        return self.vocabulary.encode(self.render(conversation))
