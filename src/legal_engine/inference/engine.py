"""
Local Inference Engine

Single-flight text generation over a process-wide model.

One threading.Lock per engine admits exactly one generate() at a time; the
model's KV cache is private per-call state and is dropped on the way out.
Other callers block until the lock is released. There is no timeout.
"""

import time
import threading
import logging
from pathlib import Path
from typing import Optional, Protocol, Sequence

import torch
from huggingface_hub import hf_hub_download

from . import EngineConfig, GenerationResult
from .decoding import DecodeLoop
from .model import load_model
from .sampling import LogitsSampler
from .tokenizer import TokenizerAdapter
from ..errors import GenerationError, LegalEngineError, LoadError

logger = logging.getLogger(__name__)

CHATML_TEMPLATE = (
    "<|im_start|>system\n{system}<|im_end|>\n"
    "<|im_start|>user\n{user}<|im_end|>\n"
    "<|im_start|>assistant\n"
)

DTYPES = {
    "float32": torch.float32,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}


class CachedModel(Protocol):
    def forward(self, token_ids: Sequence[int], start_position: int) -> torch.Tensor: ...

    def reset_cache(self) -> None: ...


def build_prompt(system: str, user: str) -> str:
    """ChatML role-tagged prompt ending in an open assistant turn."""
    return CHATML_TEMPLATE.format(system=system, user=user)


def resolve_device(device: str = "auto") -> str:
    if device == "auto":
        if torch.cuda.is_available():
            return "cuda"
        logger.warning("CUDA not available, running on CPU (generation will be slow)")
        return "cpu"
    return device


def resolve_dtype(dtype: str, device: str) -> torch.dtype:
    if dtype != "auto":
        if dtype not in DTYPES:
            raise LoadError(f"Unsupported dtype: {dtype}")
        return DTYPES[dtype]
    if device.startswith("cuda"):
        return torch.bfloat16 if torch.cuda.is_bf16_supported() else torch.float16
    return torch.float32


def resolve_file(local_path: Optional[str], repo_id: str, filename: str) -> Path:
    """
    Resolve a model artifact to a local file.

    Handles:
    - Direct file paths (must exist)
    - HuggingFace repo + filename (downloaded into the hub cache)
    """
    if local_path:
        path = Path(local_path)
        if not path.exists():
            raise LoadError(f"File not found: {path}")
        return path

    logger.info(f"Fetching {filename} from {repo_id}")
    try:
        return Path(hf_hub_download(repo_id=repo_id, filename=filename))
    except Exception as e:
        raise LoadError(f"Cannot download {filename} from {repo_id}: {e}") from e


class InferenceEngine:
    """
    Model + tokenizer + decode loop behind an exclusive lock.

    Usage:
        engine = InferenceEngine.from_config(EngineConfig.from_env())
        text = engine.generate("You are ...", "judgment text")
    """

    def __init__(
        self,
        model: CachedModel,
        tokenizer: TokenizerAdapter,
        end_of_turn: str = "<|im_end|>",
        max_new_tokens: int = 1000,
        temperature: float = 0.7,
        top_p: float = 0.95,
        seed: int = 1337,
    ):
        self.model = model
        self.tokenizer = tokenizer
        self.eos_id = tokenizer.lookup_special(end_of_turn)
        self.max_new_tokens = max_new_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed

        self._lock = threading.Lock()
        self._in_flight = 0

    @classmethod
    def from_config(cls, config: EngineConfig) -> "InferenceEngine":
        """
        Resolve weights and tokenizer, load the model and build the engine.

        Raises:
            LoadError: when any artifact cannot be found, downloaded or parsed
        """
        device = resolve_device(config.device)
        dtype = resolve_dtype(config.dtype, device)

        weights = resolve_file(config.model_path, config.model_repo, config.model_file)
        tokenizer_file = resolve_file(config.tokenizer_path, config.tokenizer_repo, config.tokenizer_file)

        logger.info(f"Loading model: {weights} on {device} ({dtype})")
        start = time.perf_counter()
        model = load_model(weights, device=device, dtype=dtype)
        tokenizer = TokenizerAdapter.from_file(tokenizer_file)
        elapsed = time.perf_counter() - start
        logger.info(f"Model loaded in {elapsed:.1f}s")

        return cls(
            model=model,
            tokenizer=tokenizer,
            end_of_turn=config.end_of_turn,
            max_new_tokens=config.max_new_tokens,
            temperature=config.temperature,
            top_p=config.top_p,
            seed=config.seed,
        )

    @property
    def in_flight(self) -> int:
        """Number of generations currently running (0 or 1)."""
        return self._in_flight

    def generate(self, system: str, user: str) -> str:
        """Generate the assistant reply for one system/user exchange."""
        return self.generate_detailed(system, user).text

    def generate_detailed(self, system: str, user: str) -> GenerationResult:
        """
        Generate with token ids, finish reason and timing.

        Blocks while another generation holds the engine.

        Raises:
            GenerationError: wrapping any tokenizer or forward-pass failure
        """
        with self._lock:
            self._in_flight += 1
            start = time.perf_counter()
            try:
                prompt_ids = self.tokenizer.encode(build_prompt(system, user))
                sampler = LogitsSampler(seed=self.seed, temperature=self.temperature, top_p=self.top_p)
                loop = DecodeLoop(self.model, sampler, self.eos_id, self.max_new_tokens)
                decoded = loop.run(prompt_ids)
                text = self.tokenizer.decode(decoded.tokens)
            except LegalEngineError as e:
                raise GenerationError(f"Generation failed: {e}") from e
            except (ValueError, RuntimeError, IndexError) as e:
                raise GenerationError(f"Forward pass failed: {e}") from e
            finally:
                self.model.reset_cache()
                self._in_flight -= 1

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info(
            f"Generated {len(decoded.tokens)} tokens from {decoded.prompt_tokens} prompt tokens "
            f"in {elapsed_ms:.0f}ms ({decoded.finish_reason})"
        )
        return GenerationResult(
            text=text,
            token_ids=decoded.tokens,
            finish_reason=decoded.finish_reason,
            prompt_tokens=decoded.prompt_tokens,
            generation_time_ms=elapsed_ms,
        )
