from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mlx_textgen.errors import ConfigError
from mlx_textgen.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_TOKENS = 512
GREEDY_TEMPERATURE_EPSILON = 1e-7


class SamplingConfig(BaseModel):
    """
    Sampling policy and stop limits for one generation session.

    Construction only checks types. Value ranges are checked by :meth:`check`,
    which sessions call during initialisation so that a bad value is reported
    as a :class:`ConfigError` before any model work starts.
    """

    model_config = ConfigDict(extra="ignore")

    temperature: float = Field(
        default=1.0,
        description="Logit temperature (1.0 = unscaled, 0.0 = greedy argmax)",
    )
    top_k: Optional[int] = Field(
        default=None,
        description="Keep only the k highest-scoring tokens",
    )
    top_p: Optional[float] = Field(
        default=None,
        description="Nucleus sampling: smallest set of tokens whose probability reaches top_p",
    )
    repetition_penalty: float = Field(
        default=1.0,
        description="Divide logits of previously seen tokens by this value (1.0 = off)",
    )
    repetition_context_size: Optional[int] = Field(
        default=None,
        description="Only penalize tokens among the last N history tokens (None = whole history)",
    )
    seed: Optional[int] = Field(
        default=None,
        description="Seed for the sampler's random key (None = draw a fresh one)",
    )
    max_tokens: int = Field(
        default=DEFAULT_MAX_TOKENS,
        description="Maximum number of tokens to generate",
    )
    stop_strings: List[str] = Field(
        default_factory=list,
        description="Stop generating once the decoded text ends with any of these strings",
    )

    @property
    def is_greedy(self) -> bool:
        return self.temperature == 0.0

    def check(self) -> "SamplingConfig":
        """Validate value ranges, raising :class:`ConfigError` on the first violation."""
        if self.temperature != self.temperature or self.temperature < 0.0:
            raise ConfigError(f"temperature must be >= 0, got {self.temperature}")
        if self.top_k is not None and self.top_k < 1:
            raise ConfigError(f"top_k must be >= 1 when set, got {self.top_k}")
        if self.top_p is not None and not (0.0 < self.top_p <= 1.0):
            raise ConfigError(f"top_p must be in (0, 1] when set, got {self.top_p}")
        if self.repetition_penalty != self.repetition_penalty or self.repetition_penalty < 1.0:
            raise ConfigError(
                f"repetition_penalty must be >= 1.0, got {self.repetition_penalty}"
            )
        if self.repetition_context_size is not None and self.repetition_context_size < 1:
            raise ConfigError(
                "repetition_context_size must be >= 1 when set, "
                f"got {self.repetition_context_size}"
            )
        if self.seed is not None and self.seed < 0:
            raise ConfigError(f"seed must be >= 0 when set, got {self.seed}")
        if self.max_tokens < 1:
            raise ConfigError(f"max_tokens must be >= 1, got {self.max_tokens}")
        if any(not stop for stop in self.stop_strings):
            raise ConfigError("stop_strings must not contain empty strings")
        return self


class SamplingMode(str, Enum):
    ARGMAX = "argmax"
    ALL = "all"
    TOP_K = "top_k"
    TOP_P = "top_p"
    TOP_K_THEN_TOP_P = "top_k_then_top_p"


class GenerationConfig(BaseModel):
    """
    Generation defaults shipped with a model (``generation_config.json``).

    ``eos_token_id`` may be a single id or a list of ids.
    """

    model_config = ConfigDict(extra="ignore")

    eos_token_id: Optional[Union[int, List[int]]] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    repetition_penalty: Optional[float] = None
    max_new_tokens: Optional[int] = None
    do_sample: Optional[bool] = None

    @classmethod
    def from_file(cls, path: str | Path) -> "GenerationConfig":
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as exc:
            raise ConfigError(f"generation config not found: {path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"invalid JSON in {path}: {exc}") from exc
        return cls.from_dict(data, source=str(path))

    @classmethod
    def from_dict(cls, data: dict[str, Any], source: str = "<dict>") -> "GenerationConfig":
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"invalid generation config {source}: {exc}") from exc

    def eos_token_ids(self) -> list[int]:
        if self.eos_token_id is None:
            return []
        if isinstance(self.eos_token_id, int):
            return [self.eos_token_id]
        return list(self.eos_token_id)

    def _effective_temperature(self) -> Optional[float]:
        if self.do_sample is False:
            return None
        if self.temperature is None:
            # Sampling requested without a temperature: unscaled logits.
            return 1.0 if self.do_sample else None
        if self.temperature < GREEDY_TEMPERATURE_EPSILON:
            return None
        return self.temperature

    def sampling_mode(self) -> SamplingMode:
        if self._effective_temperature() is None:
            return SamplingMode.ARGMAX
        if self.top_k is not None and self.top_p is not None:
            return SamplingMode.TOP_K_THEN_TOP_P
        if self.top_k is not None:
            return SamplingMode.TOP_K
        if self.top_p is not None:
            return SamplingMode.TOP_P
        return SamplingMode.ALL

    def to_sampling_config(self, **overrides: Any) -> SamplingConfig:
        """Build a :class:`SamplingConfig` from these defaults; non-None overrides win."""
        temperature = self._effective_temperature()
        values: dict[str, Any] = {
            "temperature": 0.0 if temperature is None else temperature,
        }
        if self.top_k is not None:
            values["top_k"] = self.top_k
        if self.top_p is not None:
            values["top_p"] = self.top_p
        if self.repetition_penalty is not None:
            values["repetition_penalty"] = self.repetition_penalty
        if self.max_new_tokens is not None:
            values["max_tokens"] = self.max_new_tokens
        values.update({k: v for k, v in overrides.items() if v is not None})
        return SamplingConfig(**values)


def load_generation_config(path: str | Path | None) -> GenerationConfig:
    """Load ``generation_config.json``; a missing path yields empty defaults."""
    if path is None or not Path(path).exists():
        if path is not None:
            logger.debug("No generation config at %s; using defaults", path)
        return GenerationConfig()
    return GenerationConfig.from_file(path)
