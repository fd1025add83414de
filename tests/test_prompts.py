"""
Unit tests for conversations, chat templates and the prompt builder.
"""
from __future__ import annotations

import dataclasses

import pytest

from conftest import IM_END_ID, IM_START_ID
from mlx_textgen.conversation import Conversation, Message, Role
from mlx_textgen.errors import TemplateError
from mlx_textgen.prompts.builder import PromptBuilder
from mlx_textgen.prompts.families import ModelFamily, detect_model_family, make_renderer
from mlx_textgen.prompts.template import ChatTemplateRenderer


class TestConversation:
    """Test the conversation container."""

    def test_add_and_order(self, multi_turn_conversation):
        roles = [m.role for m in multi_turn_conversation]
        assert roles == [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.USER]
        assert multi_turn_conversation[1] == Message(Role.USER, "Hi")
        assert len(multi_turn_conversation) == 4

    def test_round_trip_dicts(self, multi_turn_conversation):
        rebuilt = Conversation.from_dicts(multi_turn_conversation.to_dicts())
        assert rebuilt == multi_turn_conversation

    def test_unknown_role(self):
        with pytest.raises(TemplateError):
            Conversation.from_dicts([{"role": "tool", "content": "{}"}])

    def test_role_parse_normalises(self):
        assert Role.parse(" User ") is Role.USER

    def test_messages_are_immutable(self):
        message = Message(Role.USER, "Hi")
        with pytest.raises(dataclasses.FrozenInstanceError):
            message.content = "changed"  # type: ignore[misc]

    def test_append_requires_message(self):
        with pytest.raises(TypeError):
            Conversation().append({"role": "user", "content": "Hi"})  # type: ignore[arg-type]


class TestBuiltinTemplates:
    """Test rendering with the built-in model families."""

    def test_chatml(self, user_conversation):
        renderer = make_renderer(ModelFamily.CHATML)
        text = renderer.render_prompt_text(user_conversation.to_dicts())
        assert text == "<|im_start|>user\nHi<|im_end|>\n<|im_start|>assistant\n"

    def test_plain(self, user_conversation):
        renderer = make_renderer(ModelFamily.PLAIN)
        assert renderer.render_prompt_text(user_conversation.to_dicts()) == "User: Hi\nAssistant: "

    def test_llama3_uses_bos(self, user_conversation):
        renderer = make_renderer(ModelFamily.LLAMA3, bos_token="<|begin_of_text|>")
        text = renderer.render_prompt_text(user_conversation.to_dicts())
        assert text.startswith("<|begin_of_text|><|start_header_id|>user<|end_header_id|>\n\nHi<|eot_id|>")
        assert text.endswith("<|start_header_id|>assistant<|end_header_id|>\n\n")

    def test_gemma_renames_assistant(self):
        conversation = Conversation.from_dicts(
            [{"role": "user", "content": "Hi"}, {"role": "assistant", "content": "Yo"}]
        )
        text = make_renderer(ModelFamily.GEMMA).render_prompt_text(conversation.to_dicts())
        assert "<start_of_turn>model\nYo<end_of_turn>" in text

    def test_mistral_alternation(self):
        renderer = make_renderer(ModelFamily.MISTRAL, eos_token="</s>")
        good = [
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "b"},
            {"role": "user", "content": "c"},
        ]
        assert renderer.render_prompt_text(good) == "[INST] a [/INST]b</s>[INST] c [/INST]"

        with pytest.raises(TemplateError, match="alternate"):
            renderer.render_prompt_text([{"role": "assistant", "content": "b"}])

    def test_custom_requires_template(self):
        with pytest.raises(TemplateError):
            make_renderer(ModelFamily.CUSTOM)


class TestChatTemplateRenderer:
    """Test model-provided Jinja templates."""

    def test_custom_template(self):
        renderer = ChatTemplateRenderer(
            "{% for m in messages %}[{{ m['role'] }}]{{ m['content'] | tojson }}{% endfor %}",
            add_generation_prompt=False,
        )
        text = renderer.render_prompt_text([{"role": "user", "content": "é\"q"}])
        assert text == '[user]"é\\"q"'

    def test_syntax_error(self):
        with pytest.raises(TemplateError):
            ChatTemplateRenderer("{% for m in messages %}")

    def test_runtime_error(self):
        renderer = ChatTemplateRenderer("{{ messages[5]['content'] }}")
        with pytest.raises(TemplateError):
            renderer.render_prompt_text([{"role": "user", "content": "Hi"}])

    def test_sandboxed(self):
        renderer = ChatTemplateRenderer("{{ messages.append(1) }}")
        with pytest.raises(TemplateError):
            renderer.render_prompt_text([{"role": "user", "content": "Hi"}])


class TestFamilyDetection:
    """Test model family selection."""

    @pytest.mark.parametrize(
        "model_id, model_type, expected",
        [
            ("Qwen/Qwen2.5-0.5B-Instruct", "qwen2", ModelFamily.CHATML),
            ("meta-llama/Meta-Llama-3-8B-Instruct", "llama", ModelFamily.LLAMA3),
            ("mistralai/Mistral-7B-Instruct-v0.3", None, ModelFamily.MISTRAL),
            ("google/gemma-2b-it", "gemma", ModelFamily.GEMMA),
            ("some/unknown-model", None, ModelFamily.PLAIN),
        ],
    )
    def test_detect(self, model_id, model_type, expected):
        assert detect_model_family(model_id, model_type) is expected

    def test_chat_template_wins(self):
        assert detect_model_family("Qwen/Qwen2", "qwen2", "{{ messages }}") is ModelFamily.CUSTOM


class TestPromptBuilder:
    """Test rendering plus encoding."""

    def test_build_prompt_tokens(self, chatml_builder, user_conversation):
        ids = chatml_builder.build_prompt_tokens(user_conversation)

        assert ids[0] == IM_START_ID
        assert ids.count(IM_START_ID) == 2
        assert ids.count(IM_END_ID) == 1
        assert bytes(i for i in ids if i < 256) == b"user\nHi\nassistant\n"

    def test_empty_conversation(self, chatml_builder):
        with pytest.raises(TemplateError):
            chatml_builder.render(Conversation())

    def test_unsupported_role(self, vocabulary, multi_turn_conversation):
        builder = PromptBuilder(make_renderer(ModelFamily.GEMMA), vocabulary)
        with pytest.raises(TemplateError, match="system"):
            builder.render(multi_turn_conversation)

    def test_does_not_modify_conversation(self, chatml_builder, multi_turn_conversation):
        before = multi_turn_conversation.to_dicts()
        chatml_builder.build_prompt_tokens(multi_turn_conversation)
        assert multi_turn_conversation.to_dicts() == before
