"""Chat template variants per model family."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from mlx_textgen.conversation import Role
from mlx_textgen.errors import TemplateError
from mlx_textgen.prompts.template import ChatTemplateRenderer


class ModelFamily(str, Enum):
    CHATML = "chatml"
    LLAMA3 = "llama3"
    MISTRAL = "mistral"
    GEMMA = "gemma"
    PLAIN = "plain"
    CUSTOM = "custom"  # the model's own chat_template


CHATML_TEMPLATE = (
    "{% for message in messages %}"
    "<|im_start|>{{ message['role'] }}\n{{ message['content'] }}<|im_end|>\n"
    "{% endfor %}"
    "{% if add_generation_prompt %}<|im_start|>assistant\n{% endif %}"
)

LLAMA3_TEMPLATE = (
    "{{ bos_token }}"
    "{% for message in messages %}"
    "<|start_header_id|>{{ message['role'] }}<|end_header_id|>\n\n"
    "{{ message['content'] | trim }}<|eot_id|>"
    "{% endfor %}"
    "{% if add_generation_prompt %}<|start_header_id|>assistant<|end_header_id|>\n\n{% endif %}"
)

MISTRAL_TEMPLATE = (
    "{{ bos_token }}"
    "{% for message in messages %}"
    "{% if (message['role'] == 'user') != (loop.index0 % 2 == 0) %}"
    "{{ raise_exception('Conversation roles must alternate user/assistant/user/assistant/...') }}"
    "{% endif %}"
    "{% if message['role'] == 'user' %}[INST] {{ message['content'] }} [/INST]"
    "{% else %}{{ message['content'] }}{{ eos_token }}{% endif %}"
    "{% endfor %}"
)

GEMMA_TEMPLATE = (
    "{{ bos_token }}"
    "{% for message in messages %}"
    "{% set role = 'model' if message['role'] == 'assistant' else message['role'] %}"
    "<start_of_turn>{{ role }}\n{{ message['content'] | trim }}<end_of_turn>\n"
    "{% endfor %}"
    "{% if add_generation_prompt %}<start_of_turn>model\n{% endif %}"
)

PLAIN_TEMPLATE = (
    "{% for message in messages %}"
    "{{ message['role'] | capitalize }}: {{ message['content'] }}\n"
    "{% endfor %}"
    "{% if add_generation_prompt %}Assistant: {% endif %}"
)

_ALL_ROLES = frozenset(Role)
_NO_SYSTEM = frozenset({Role.USER, Role.ASSISTANT})

_BUILTIN: dict[ModelFamily, tuple[str, frozenset[Role]]] = {
    ModelFamily.CHATML: (CHATML_TEMPLATE, _ALL_ROLES),
    ModelFamily.LLAMA3: (LLAMA3_TEMPLATE, _ALL_ROLES),
    ModelFamily.MISTRAL: (MISTRAL_TEMPLATE, _NO_SYSTEM),
    ModelFamily.GEMMA: (GEMMA_TEMPLATE, _NO_SYSTEM),
    ModelFamily.PLAIN: (PLAIN_TEMPLATE, _ALL_ROLES),
}

# Checked in order against model_type / model id (lower-cased).
_FAMILY_HINTS: tuple[tuple[str, ModelFamily], ...] = (
    ("qwen", ModelFamily.CHATML),
    ("chatml", ModelFamily.CHATML),
    ("llama-3", ModelFamily.LLAMA3),
    ("llama3", ModelFamily.LLAMA3),
    ("llama", ModelFamily.LLAMA3),
    ("mistral", ModelFamily.MISTRAL),
    ("gemma", ModelFamily.GEMMA),
)


def detect_model_family(
    model_id: str = "",
    model_type: Optional[str] = None,
    chat_template: Optional[str] = None,
) -> ModelFamily:
    """
    Pick the rendering strategy for a model.

    A model that ships its own chat template always uses it. Otherwise the
    family is guessed from ``model_type`` and then the model id, falling back
    to a plain ``Role: content`` transcript.
    """
    if chat_template:
        return ModelFamily.CUSTOM
    for hint_source in (model_type or "", model_id or ""):
        lowered = hint_source.lower()
        for needle, family in _FAMILY_HINTS:
            if needle in lowered:
                return family
    return ModelFamily.PLAIN


def make_renderer(
    family: ModelFamily,
    *,
    chat_template: Optional[str] = None,
    bos_token: str = "",
    eos_token: str = "",
) -> ChatTemplateRenderer:
    family = ModelFamily(family)
    if family is ModelFamily.CUSTOM:
        if not chat_template:
            raise TemplateError("model family 'custom' requires the model's chat template")
        return ChatTemplateRenderer(chat_template, bos_token=bos_token, eos_token=eos_token)
    template, roles = _BUILTIN[family]
    return ChatTemplateRenderer(
        template,
        bos_token=bos_token,
        eos_token=eos_token,
        supported_roles=roles,
    )
