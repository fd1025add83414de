"""
Tokenizer loader for ByteLevel BPE tokenizers (``tokenizer.json``).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from mlx_textgen.errors import ConfigError
from mlx_textgen.runtime.tokenizer_bpe import ByteLevelBPETokenizer

_SPECIAL_ROLES = ("eos_token", "bos_token", "pad_token", "unk_token")


def _token_content(value: Any) -> str | None:
    """tokenizer_config.json stores special tokens as strings or AddedToken dicts."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        content = value.get("content")
        return content if isinstance(content, str) else None
    return None


def _read_json(path: Path) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid JSON in {path}: {exc}") from exc


def _parse_merges(merges: list[Any]) -> list[tuple[str, str]]:
    merge_pairs: list[tuple[str, str]] = []
    for merge in merges:
        if isinstance(merge, list) and len(merge) == 2:
            merge_pairs.append((merge[0], merge[1]))
        elif isinstance(merge, str):
            parts = merge.split(" ")
            if len(parts) != 2:
                raise ConfigError(f"Invalid merge format: {merge!r}")
            merge_pairs.append((parts[0], parts[1]))
        else:
            raise ConfigError(f"Invalid merge format: {merge!r}")
    return merge_pairs


def _guess_special_tokens(added: dict[str, bool], vocab: dict[str, int]) -> dict[str, str]:
    special_tokens: dict[str, str] = {}
    for content, is_special in added.items():
        if not is_special:
            continue
        lowered = content.lower()
        if "eos_token" not in special_tokens and (
            "eos" in lowered or "endoftext" in lowered or "end_of_text" in lowered
        ):
            special_tokens["eos_token"] = content
        elif "bos_token" not in special_tokens and (
            "bos" in lowered or "startoftext" in lowered or "begin_of_text" in lowered
        ):
            special_tokens["bos_token"] = content
        elif "pad" in lowered:
            special_tokens.setdefault("pad_token", content)
        elif "unk" in lowered:
            special_tokens.setdefault("unk_token", content)

    if "eos_token" not in special_tokens:
        for token_str in ("<|endoftext|>", "</s>", "<eos>"):
            if token_str in vocab:
                special_tokens["eos_token"] = token_str
                break
    if "bos_token" not in special_tokens:
        for token_str in ("<|startoftext|>", "<s>", "<bos>"):
            if token_str in vocab:
                special_tokens["bos_token"] = token_str
                break
    return special_tokens


def load_tokenizer(
    tokenizer_path: str | Path,
    tokenizer_config_path: str | Path | None = None,
) -> ByteLevelBPETokenizer:
    """
    Load a ByteLevel BPE tokenizer.

    Args:
        tokenizer_path: Path to ``tokenizer.json`` or to a directory containing it
        tokenizer_config_path: Optional ``tokenizer_config.json``; defaults to the
            sibling of ``tokenizer.json`` when present. Its ``eos_token`` /
            ``bos_token`` / ``pad_token`` entries take precedence over guesses
            made from ``added_tokens``.

    Raises:
        FileNotFoundError: If tokenizer.json is not found
        ConfigError: If the tokenizer format is not supported
    """
    tokenizer_path = Path(tokenizer_path)
    if tokenizer_path.is_dir():
        tokenizer_path = tokenizer_path / "tokenizer.json"
    if not tokenizer_path.exists():
        raise FileNotFoundError(f"tokenizer.json not found at {tokenizer_path}")

    tokenizer_data = _read_json(tokenizer_path)
    model_config = tokenizer_data.get("model", {})
    model_type = model_config.get("type", "")
    if model_type != "BPE":
        raise ConfigError(
            f"Unsupported tokenizer type: {model_type!r}. Only BPE tokenizers are supported."
        )

    vocab: dict[str, int] = dict(model_config.get("vocab", {}))
    if not vocab:
        raise ConfigError("Vocabulary not found in tokenizer.json")
    merges = _parse_merges(model_config.get("merges", []))

    added: dict[str, bool] = {}
    for token_info in tokenizer_data.get("added_tokens", []):
        if not isinstance(token_info, dict):
            continue
        content = token_info.get("content")
        token_id = token_info.get("id")
        if content is None or token_id is None:
            continue
        vocab[content] = int(token_id)
        added[content] = bool(token_info.get("special", False))

    special_tokens = _guess_special_tokens(added, vocab)

    if tokenizer_config_path is None:
        candidate = tokenizer_path.with_name("tokenizer_config.json")
        tokenizer_config_path = candidate if candidate.exists() else None

    chat_template: str | None = None
    if tokenizer_config_path is not None and Path(tokenizer_config_path).exists():
        tokenizer_config = _read_json(Path(tokenizer_config_path))
        for role in _SPECIAL_ROLES:
            content = _token_content(tokenizer_config.get(role))
            if content is not None and content in vocab:
                special_tokens[role] = content
        template = tokenizer_config.get("chat_template")
        if isinstance(template, str):
            chat_template = template

    return ByteLevelBPETokenizer(
        vocab=vocab,
        merges=merges,
        special_tokens=special_tokens,
        added_tokens=added.keys(),
        skipped_tokens=[t for t, is_special in added.items() if is_special],
        chat_template=chat_template,
    )
