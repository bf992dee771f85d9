"""
Self-Vendored Inference Module

Local inference for case analysis: a quantized Qwen2 model run in-process.
Supports:
- Direct GGUF loading with pure Python dequantization (F32/F16/BF16/Q8_0/Q4_0)
- Stateful KV-cached forward passes
- Seeded temperature + nucleus sampling
- A single-flight engine shared by every request in the process
"""

import os
from dataclasses import dataclass, field
from typing import Optional

ENV_PREFIX = "LEGAL_ENGINE_"


@dataclass
class EngineConfig:
    """Configuration for the local inference engine."""

    # Weights: a local GGUF path, or downloaded from the hub when unset
    model_path: Optional[str] = None
    model_repo: str = "Qwen/Qwen2.5-3B-Instruct-GGUF"
    model_file: str = "qwen2.5-3b-instruct-q8_0.gguf"

    # Tokenizer: a local tokenizer.json, or downloaded from the hub when unset
    tokenizer_path: Optional[str] = None
    tokenizer_repo: str = "Qwen/Qwen2.5-3B-Instruct"
    tokenizer_file: str = "tokenizer.json"

    # Hardware
    device: str = "auto"  # auto | cuda | cpu
    dtype: str = "auto"  # auto | float32 | float16 | bfloat16

    # Generation
    max_new_tokens: int = 1000
    temperature: float = 0.7
    top_p: float = 0.95
    seed: int = 1337
    end_of_turn: str = "<|im_end|>"

    @classmethod
    def from_env(cls, **overrides) -> "EngineConfig":
        """Defaults, then LEGAL_ENGINE_* environment variables, then explicit overrides."""
        env = {
            "model_path": os.environ.get(f"{ENV_PREFIX}MODEL_PATH"),
            "tokenizer_path": os.environ.get(f"{ENV_PREFIX}TOKENIZER_PATH"),
            "device": os.environ.get(f"{ENV_PREFIX}DEVICE"),
        }
        values = {k: v for k, v in env.items() if v}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class GenerationResult:
    """Result from generation."""

    text: str
    token_ids: list[int] = field(default_factory=list)
    finish_reason: str = "length"  # "eos" or "length"
    prompt_tokens: int = 0
    generation_time_ms: float = 0.0

    @property
    def tokens_generated(self) -> int:
        return len(self.token_ids)


# GGUF loading exports
from .gguf_loader import (
    GGUFReader,
    GGUFTensorInfo,
    GGUFHeader,
    inspect_gguf,
)

# Model exports
from .model import (
    TransformerModel,
    ModelConfig,
    load_model,
)

from .tokenizer import TokenizerAdapter
from .sampling import LogitsSampler
from .decoding import DecodeLoop, DecodeResult, DecodeState
from .engine import InferenceEngine, build_prompt

__all__ = [
    # Config
    "EngineConfig",
    "GenerationResult",
    # GGUF
    "GGUFReader",
    "GGUFTensorInfo",
    "GGUFHeader",
    "inspect_gguf",
    # Model
    "TransformerModel",
    "ModelConfig",
    "load_model",
    # Generation
    "TokenizerAdapter",
    "LogitsSampler",
    "DecodeLoop",
    "DecodeResult",
    "DecodeState",
    "InferenceEngine",
    "build_prompt",
]
