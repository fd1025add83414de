from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Optional, Sequence

from jinja2 import TemplateError as JinjaTemplateError
from jinja2.sandbox import ImmutableSandboxedEnvironment

from mlx_textgen.conversation import Role
from mlx_textgen.errors import TemplateError


def _raise_exception(message: str) -> None:
    raise TemplateError(message)


def _strftime_now(fmt: str) -> str:
    return datetime.now().strftime(fmt)


def _tojson(value: Any, indent: Optional[int] = None) -> str:
    return json.dumps(value, ensure_ascii=False, indent=indent)


class ChatTemplateRenderer:
    """
    Render prompts with a Jinja chat template (the ``chat_template`` format of
    ``tokenizer_config.json``).

    The template is compiled once. It sees ``messages``,
    ``add_generation_prompt``, ``bos_token`` and ``eos_token`` plus the
    ``raise_exception`` and ``strftime_now`` helpers that Hub templates use.
    """

    def __init__(
        self,
        template: str,
        *,
        bos_token: str = "",
        eos_token: str = "",
        add_generation_prompt: bool = True,
        supported_roles: Iterable[Role] = tuple(Role),
    ) -> None:
        self.source = template
        self.bos_token = bos_token
        self.eos_token = eos_token
        self.add_generation_prompt = add_generation_prompt
        self.supported_roles = frozenset(supported_roles)

        env = ImmutableSandboxedEnvironment(trim_blocks=True, lstrip_blocks=True)
        env.globals["raise_exception"] = _raise_exception
        env.globals["strftime_now"] = _strftime_now
        env.filters["tojson"] = _tojson
        try:
            self._template = env.from_string(template)
        except JinjaTemplateError as exc:
            raise TemplateError(f"invalid chat template: {exc}") from exc

    def render_prompt_text(self, messages: Sequence[dict[str, str]]) -> str:
        try:
            return self._template.render(
                messages=list(messages),
                add_generation_prompt=self.add_generation_prompt,
                bos_token=self.bos_token,
                eos_token=self.eos_token,
            )
        except TemplateError:
            raise
        except (JinjaTemplateError, TypeError, ValueError, KeyError, IndexError) as exc:
            raise TemplateError(f"chat template failed to render: {exc}") from exc
