from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Optional, Sequence

import mlx.nn as nn

from mlx_textgen.config import GenerationConfig, SamplingConfig
from mlx_textgen.conversation import Conversation
from mlx_textgen.generation.backend import MLXModelRunner, ModelRunner, SerializedRunner
from mlx_textgen.generation.decoder import CacheBackedDecoder
from mlx_textgen.generation.session import GenerationResult, GenerationSession
from mlx_textgen.logging import get_logger
from mlx_textgen.prompts.builder import PromptBuilder
from mlx_textgen.prompts.families import ModelFamily, detect_model_family, make_renderer
from mlx_textgen.runtime.loader import (
    ModelFiles,
    load_chat_template,
    load_model_config,
    load_model_generation_config,
    resolve_model,
)
from mlx_textgen.runtime.tokenizer import VocabularyAdapter
from mlx_textgen.runtime.tokenizer_loader import load_tokenizer

logger = get_logger(__name__)


class TextGenerator:
    """
    Generation entry point for one loaded model.

    Holds the model runner, vocabulary and prompt builder, and hands out
    independent :class:`GenerationSession` objects. Each session gets its own
    cache and sampler; the runner is shared and, unless ``serialize=False``,
    wrapped so that only one session calls the model at a time.
    """

    def __init__(
        self,
        runner: ModelRunner,
        vocabulary: VocabularyAdapter,
        prompt_builder: PromptBuilder,
        generation_config: Optional[GenerationConfig] = None,
        max_context: Optional[int] = None,
        serialize: bool = True,
    ) -> None:
        if serialize and not isinstance(runner, SerializedRunner):
            runner = SerializedRunner(runner)
        self.runner = runner
        self.vocabulary = vocabulary
        self.prompt_builder = prompt_builder
        self.generation_config = generation_config or GenerationConfig()
        self.decoder = CacheBackedDecoder(runner, max_context=max_context)

    @classmethod
    def from_model_files(
        cls,
        files: ModelFiles,
        runner: ModelRunner,
        family: ModelFamily | str | None = None,
        *,
        serialize: bool = True,
    ) -> "TextGenerator":
        """Build tokenizer, prompt renderer and sampling defaults from resolved model files."""
        tokenizer = load_tokenizer(files.tokenizer, files.tokenizer_config)
        model_config = load_model_config(files)
        generation_config = load_model_generation_config(files)
        vocabulary = VocabularyAdapter(
            tokenizer, eos_token_ids=generation_config.eos_token_ids()
        )

        chat_template = load_chat_template(files)
        if family is None:
            family = detect_model_family(files.model_id, model_config.model_type, chat_template)
        family = ModelFamily(family)
        renderer = make_renderer(
            family,
            chat_template=chat_template,
            bos_token=tokenizer.bos_token or "",
            eos_token=tokenizer.eos_token or "",
        )
        logger.info(
            "Loaded %s: family=%s, vocab=%d, eos=%s, context=%s",
            files.model_id,
            family.value,
            vocabulary.vocab_size,
            list(vocabulary.eos_ids),
            model_config.max_position_embeddings,
        )
        return cls(
            runner,
            vocabulary,
            PromptBuilder(renderer, vocabulary),
            generation_config=generation_config,
            max_context=model_config.max_position_embeddings,
            serialize=serialize,
        )

    @classmethod
    def from_pretrained(
        cls,
        path_or_hf_repo: str,
        model: nn.Module,
        *,
        revision: str | None = None,
        cache_dir: str | Path | None = None,
        family: ModelFamily | str | None = None,
        prefill_step_size: int = 2048,
    ) -> "TextGenerator":
        """Resolve ``path_or_hf_repo`` and drive ``model`` (already loaded) with its files."""
        files = resolve_model(path_or_hf_repo, revision=revision, cache_dir=cache_dir)
        runner = MLXModelRunner(model, prefill_step_size=prefill_step_size)
        return cls.from_model_files(files, runner, family=family)

    def sampling_config(self, **overrides: Any) -> SamplingConfig:
        """Model defaults from ``generation_config.json`` with non-None overrides applied."""
        return self.generation_config.to_sampling_config(**overrides)

    def _resolve_sampling(
        self, sampling: Optional[SamplingConfig], overrides: dict[str, Any]
    ) -> SamplingConfig:
        if sampling is None:
            return self.sampling_config(**overrides)
        if overrides:
            return sampling.model_copy(update=overrides)
        return sampling

    def session(
        self,
        conversation: Conversation,
        sampling: Optional[SamplingConfig] = None,
        **overrides: Any,
    ) -> GenerationSession:
        sampling = self._resolve_sampling(sampling, overrides)
        return GenerationSession(
            conversation,
            sampling,
            prompt_builder=self.prompt_builder,
            decoder=self.decoder,
            vocabulary=self.vocabulary,
        )

    def completion(
        self,
        prompt: str | Sequence[int],
        sampling: Optional[SamplingConfig] = None,
        **overrides: Any,
    ) -> GenerationSession:
        """
        Session that continues raw prompt text or prompt ids without a chat template.

        Text is encoded as-is, so any special tokens it needs must be spelled
        out in the prompt.
        """
        sampling = self._resolve_sampling(sampling, overrides)
        prompt_tokens = self.vocabulary.encode(prompt) if isinstance(prompt, str) else prompt
        return GenerationSession.from_prompt_tokens(
            prompt_tokens,
            sampling,
            decoder=self.decoder,
            vocabulary=self.vocabulary,
        )

    def complete(
        self,
        prompt: str | Sequence[int],
        sampling: Optional[SamplingConfig] = None,
        on_text: Optional[Callable[[str], None]] = None,
        **overrides: Any,
    ) -> GenerationResult:
        return self.completion(prompt, sampling, **overrides).run(on_text)

    def generate(
        self,
        conversation: Conversation,
        sampling: Optional[SamplingConfig] = None,
        on_text: Optional[Callable[[str], None]] = None,
        **overrides: Any,
    ) -> GenerationResult:
        return self.session(conversation, sampling, **overrides).run(on_text)
