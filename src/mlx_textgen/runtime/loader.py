"""
Model file resolution for mlx-textgen.

Resolves a local directory or Hugging Face repo id to the files the
generation core needs (tokenizer, configs, chat template, weights). Loading the
weights into a model is left to the caller's model runner.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from huggingface_hub import snapshot_download
from pydantic import BaseModel, ConfigDict, ValidationError

from mlx_textgen.config import GenerationConfig, load_generation_config
from mlx_textgen.errors import ConfigError, FetchError
from mlx_textgen.logging import get_logger

logger = get_logger(__name__)

ALLOW_PATTERNS = [
    "*.json",
    "model*.safetensors",
    "tokenizer.model",
    "*.tiktoken",
    "*.txt",
    "*.jinja",
]
SAFETENSORS_INDEX = "model.safetensors.index.json"


class ModelConfig(BaseModel):
    """Subset of ``config.json`` the generation core reads."""

    model_config = ConfigDict(extra="allow")

    model_type: Optional[str] = None
    vocab_size: Optional[int] = None
    max_position_embeddings: Optional[int] = None
    num_hidden_layers: Optional[int] = None


@dataclass(frozen=True)
class ModelFiles:
    """Local paths for one resolved model."""

    model_id: str
    root: Path
    weights: tuple[Path, ...]
    tokenizer: Path
    tokenizer_config: Optional[Path]
    config: Optional[Path]
    generation_config: Optional[Path]
    chat_template: Optional[Path]


def _optional(root: Path, name: str) -> Optional[Path]:
    path = root / name
    return path if path.exists() else None


def read_safetensors_index(index_file: Path) -> set[str]:
    """Return the shard file names listed in a safetensors index's ``weight_map``."""
    try:
        with open(index_file, "r", encoding="utf-8") as f:
            index = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise FetchError(f"cannot read safetensors index {index_file}: {exc}") from exc

    weight_map = index.get("weight_map")
    if weight_map is None:
        raise FetchError(f"no weight map in {index_file}")
    if not isinstance(weight_map, dict):
        raise FetchError(f"weight map in {index_file} is not a map")
    return {value for value in weight_map.values() if isinstance(value, str)}


def find_weight_files(root: Path) -> tuple[Path, ...]:
    single = root / "model.safetensors"
    if single.exists():
        return (single,)

    index_file = root / SAFETENSORS_INDEX
    if index_file.exists():
        shards = tuple(sorted(root / name for name in read_safetensors_index(index_file)))
        missing = [str(p) for p in shards if not p.exists()]
        if missing:
            raise FetchError(f"safetensors shards missing from {root}: {', '.join(missing)}")
        return shards

    shards = tuple(sorted(root.glob("model*.safetensors")))
    if not shards:
        raise FetchError(f"No safetensors files found in {root}")
    return shards


def _download_model(
    path_or_hf_repo: str,
    revision: str | None = None,
    cache_dir: str | Path | None = None,
    token: str | None = None,
) -> Path:
    """
    Download model from HuggingFace Hub if needed, or return local path.

    Args:
        path_or_hf_repo: Local path or HuggingFace repo ID
        revision: Optional revision (branch, tag, or commit)
        cache_dir: Optional hub cache directory
        token: Optional hub access token

    Returns:
        Path to local model directory
    """
    model_path = Path(path_or_hf_repo)
    if model_path.exists():
        return model_path

    logger.info("Fetching %s (revision=%s) from the Hugging Face Hub", path_or_hf_repo, revision or "main")
    try:
        return Path(
            snapshot_download(
                path_or_hf_repo,
                revision=revision,
                cache_dir=str(cache_dir) if cache_dir is not None else None,
                token=token,
                allow_patterns=ALLOW_PATTERNS,
            )
        )
    except Exception as exc:
        raise FetchError(f"cannot fetch model {path_or_hf_repo!r}: {exc}") from exc


def resolve_model(
    path_or_hf_repo: str,
    revision: str | None = None,
    cache_dir: str | Path | None = None,
    token: str | None = None,
    require_weights: bool = True,
) -> ModelFiles:
    """Resolve a model id or local directory to :class:`ModelFiles`."""
    root = _download_model(path_or_hf_repo, revision=revision, cache_dir=cache_dir, token=token)
    if not root.is_dir():
        raise FetchError(f"model path {root} is not a directory")

    tokenizer = root / "tokenizer.json"
    if not tokenizer.exists():
        raise FetchError(f"tokenizer.json not found in {root}")

    weights = find_weight_files(root) if require_weights else ()
    files = ModelFiles(
        model_id=path_or_hf_repo,
        root=root,
        weights=weights,
        tokenizer=tokenizer,
        tokenizer_config=_optional(root, "tokenizer_config.json"),
        config=_optional(root, "config.json"),
        generation_config=_optional(root, "generation_config.json"),
        chat_template=_optional(root, "chat_template.jinja"),
    )
    logger.info("Resolved %s to %s (%d weight files)", path_or_hf_repo, root, len(weights))
    return files


def _load_json(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid JSON in {path}: {exc}") from exc


def load_model_config(files: ModelFiles) -> ModelConfig:
    if files.config is None:
        return ModelConfig()
    try:
        return ModelConfig.model_validate(_load_json(files.config))
    except ValidationError as exc:
        raise ConfigError(f"invalid model config {files.config}: {exc}") from exc


def load_model_generation_config(files: ModelFiles) -> GenerationConfig:
    return load_generation_config(files.generation_config)


def load_chat_template(files: ModelFiles) -> Optional[str]:
    """
    Return the model's chat template.

    ``chat_template.jinja`` wins over ``tokenizer_config.json``. A list of
    named templates picks the one called ``default``.
    """
    if files.chat_template is not None:
        return files.chat_template.read_text(encoding="utf-8")
    if files.tokenizer_config is None:
        return None

    template = _load_json(files.tokenizer_config).get("chat_template")
    if isinstance(template, list):
        named = {
            entry.get("name"): entry.get("template")
            for entry in template
            if isinstance(entry, dict)
        }
        template = named.get("default")
    return template if isinstance(template, str) else None
