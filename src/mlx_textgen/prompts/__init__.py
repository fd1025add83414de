"""
Conversation to prompt rendering.

Built-in templates cover common chat formats; a model that ships its own
``chat_template`` is rendered with it instead.
"""

from mlx_textgen.prompts.builder import PromptBuilder
from mlx_textgen.prompts.families import ModelFamily, detect_model_family, make_renderer
from mlx_textgen.prompts.template import ChatTemplateRenderer

__all__ = [
    "ChatTemplateRenderer",
    "ModelFamily",
    "PromptBuilder",
    "detect_model_family",
    "make_renderer",
]
