"""
Unit tests for model file resolution.

Hub downloads are replaced with monkeypatched stand-ins; nothing touches the
network.
"""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from mlx_textgen.errors import ConfigError, FetchError
from mlx_textgen.runtime import loader
from mlx_textgen.runtime.loader import (
    ALLOW_PATTERNS,
    find_weight_files,
    load_chat_template,
    load_model_config,
    load_model_generation_config,
    resolve_model,
)


class TestResolveLocal:
    """Test resolving a local model directory."""

    def test_resolve(self, model_dir: Path):
        files = resolve_model(str(model_dir))

        assert files.root == model_dir
        assert files.weights == (model_dir / "model.safetensors",)
        assert files.tokenizer == model_dir / "tokenizer.json"
        assert files.tokenizer_config == model_dir / "tokenizer_config.json"
        assert files.generation_config == model_dir / "generation_config.json"
        assert files.chat_template is None

    def test_missing_tokenizer(self, model_dir: Path):
        (model_dir / "tokenizer.json").unlink()
        with pytest.raises(FetchError, match="tokenizer.json"):
            resolve_model(str(model_dir))

    def test_missing_weights(self, model_dir: Path):
        (model_dir / "model.safetensors").unlink()
        with pytest.raises(FetchError):
            resolve_model(str(model_dir))
        assert resolve_model(str(model_dir), require_weights=False).weights == ()

    def test_not_a_directory(self, tmp_path: Path):
        path = tmp_path / "weights.bin"
        path.write_bytes(b"")
        with pytest.raises(FetchError):
            resolve_model(str(path))


class TestWeightFiles:
    """Test safetensors discovery."""

    def test_sharded_index(self, tmp_path: Path):
        for name in ("model-00001-of-00002.safetensors", "model-00002-of-00002.safetensors"):
            (tmp_path / name).write_bytes(b"")
        (tmp_path / "model.safetensors.index.json").write_text(
            json.dumps(
                {
                    "weight_map": {
                        "a.weight": "model-00001-of-00002.safetensors",
                        "b.weight": "model-00002-of-00002.safetensors",
                        "c.weight": "model-00002-of-00002.safetensors",
                    }
                }
            ),
            encoding="utf-8",
        )

        shards = find_weight_files(tmp_path)

        assert [p.name for p in shards] == [
            "model-00001-of-00002.safetensors",
            "model-00002-of-00002.safetensors",
        ]

    def test_index_with_missing_shard(self, tmp_path: Path):
        (tmp_path / "model.safetensors.index.json").write_text(
            json.dumps({"weight_map": {"a.weight": "model-00001-of-00001.safetensors"}}),
            encoding="utf-8",
        )
        with pytest.raises(FetchError, match="missing"):
            find_weight_files(tmp_path)

    def test_index_without_weight_map(self, tmp_path: Path):
        (tmp_path / "model.safetensors.index.json").write_text("{}", encoding="utf-8")
        with pytest.raises(FetchError, match="weight map"):
            find_weight_files(tmp_path)

    def test_glob_fallback(self, tmp_path: Path):
        (tmp_path / "model-a.safetensors").write_bytes(b"")
        assert [p.name for p in find_weight_files(tmp_path)] == ["model-a.safetensors"]


class TestResolveRemote:
    """Test hub downloads through snapshot_download."""

    def test_download(self, monkeypatch, model_dir: Path):
        seen = {}

        def fake_snapshot_download(repo_id, **kwargs):
            seen["repo_id"] = repo_id
            seen.update(kwargs)
            return str(model_dir)

        monkeypatch.setattr(loader, "snapshot_download", fake_snapshot_download)

        files = resolve_model("acme/tiny-chat", revision="v1", token="hf_x")

        assert files.root == model_dir
        assert files.model_id == "acme/tiny-chat"
        assert seen["repo_id"] == "acme/tiny-chat"
        assert seen["revision"] == "v1"
        assert seen["token"] == "hf_x"
        assert seen["allow_patterns"] == ALLOW_PATTERNS

    def test_download_failure(self, monkeypatch):
        def failing_snapshot_download(repo_id, **kwargs):
            raise OSError("network unreachable")

        monkeypatch.setattr(loader, "snapshot_download", failing_snapshot_download)

        with pytest.raises(FetchError) as excinfo:
            resolve_model("acme/missing")
        assert isinstance(excinfo.value.__cause__, OSError)


class TestModelMetadata:
    """Test reading configs and chat templates from resolved files."""

    def test_model_config(self, model_dir: Path):
        config = load_model_config(resolve_model(str(model_dir)))
        assert config.model_type == "qwen2"
        assert config.max_position_embeddings == 128

    def test_invalid_model_config(self, model_dir: Path):
        (model_dir / "config.json").write_text("[", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_model_config(resolve_model(str(model_dir)))

    def test_generation_config(self, model_dir: Path):
        config = load_model_generation_config(resolve_model(str(model_dir)))
        assert config.eos_token_ids() == [256, 258]

    def test_chat_template_from_tokenizer_config(self, model_dir: Path):
        (model_dir / "tokenizer_config.json").write_text(
            json.dumps(
                {
                    "chat_template": [
                        {"name": "tool_use", "template": "tools"},
                        {"name": "default", "template": "{{ messages }}"},
                    ]
                }
            ),
            encoding="utf-8",
        )
        assert load_chat_template(resolve_model(str(model_dir))) == "{{ messages }}"

    def test_chat_template_file_wins(self, model_dir: Path):
        (model_dir / "tokenizer_config.json").write_text(
            json.dumps({"chat_template": "from config"}), encoding="utf-8"
        )
        (model_dir / "chat_template.jinja").write_text("from file", encoding="utf-8")
        assert load_chat_template(resolve_model(str(model_dir))) == "from file"

    def test_no_chat_template(self, model_dir: Path):
        assert load_chat_template(resolve_model(str(model_dir))) is None
