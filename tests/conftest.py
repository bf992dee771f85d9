"""
Pytest configuration and shared fixtures.

Everything here runs offline: a tiny GGUF writer (F32 and Q8_0), a tiny
word-level tokenizer, scripted stand-ins for the model and the pipeline's
collaborators.
"""

import logging
import struct
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pytest
import torch

# Configure logging for test runs
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# GGUF Writer
# =============================================================================

GGML_TYPE_F32 = 0
GGML_TYPE_F16 = 1
GGML_TYPE_Q4_0 = 2
GGML_TYPE_Q8_0 = 8
GGML_TYPE_Q4_K = 12
GGML_TYPE_BF16 = 30

# (name, numpy-order shape, ggml type, raw bytes)
TensorSpec = Tuple[str, Tuple[int, ...], int, bytes]


def _pack_string(s: str) -> bytes:
    data = s.encode("utf-8")
    return struct.pack("<Q", len(data)) + data


def _pack_value(value) -> bytes:
    """Type tag + payload for a metadata value."""
    if isinstance(value, bool):
        return struct.pack("<IB", 7, int(value))
    if isinstance(value, int):
        return struct.pack("<II", 4, value)
    if isinstance(value, float):
        return struct.pack("<If", 6, value)
    if isinstance(value, str):
        return struct.pack("<I", 8) + _pack_string(value)
    if isinstance(value, list):
        if all(isinstance(v, str) for v in value):
            body = b"".join(_pack_string(v) for v in value)
            return struct.pack("<IIQ", 9, 8, len(value)) + body
        body = b"".join(struct.pack("<i", v) for v in value)
        return struct.pack("<IIQ", 9, 5, len(value)) + body
    raise TypeError(f"Unsupported metadata value: {value!r}")


def write_gguf(
    path: Path,
    metadata: Dict[str, object],
    tensors: Sequence[TensorSpec],
    version: int = 3,
    alignment: int = 32,
) -> Path:
    """Write a GGUF file; tensor data is aligned like llama.cpp writes it."""
    header = struct.pack("<IIQQ", 0x46554747, version, len(tensors), len(metadata))
    kv = b"".join(_pack_string(k) + _pack_value(v) for k, v in metadata.items())

    infos = b""
    data = b""
    for name, shape, ggml_type, raw in tensors:
        pad = (-len(data)) % alignment
        data += b"\x00" * pad
        dims = tuple(reversed(shape))
        infos += _pack_string(name) + struct.pack("<I", len(dims))
        infos += b"".join(struct.pack("<Q", d) for d in dims)
        infos += struct.pack("<IQ", ggml_type, len(data))
        data += raw

    body = header + kv + infos
    body += b"\x00" * ((-len(body)) % alignment)
    path.write_bytes(body + data)
    return path


def f32_tensor(name: str, arr: np.ndarray) -> TensorSpec:
    arr = np.ascontiguousarray(arr, dtype=np.float32)
    return (name, arr.shape, GGML_TYPE_F32, arr.tobytes())


def quantize_q8_0(arr: np.ndarray) -> bytes:
    """Reference Q8_0 quantizer: per 32-block fp16 scale = max|x| / 127."""
    flat = np.asarray(arr, dtype=np.float32).reshape(-1, 32)
    amax = np.abs(flat).max(axis=1)
    scales = (amax / 127.0).astype(np.float16)
    safe = np.where(scales == 0, 1.0, scales.astype(np.float32))
    qs = np.clip(np.round(flat / safe[:, None]), -127, 127).astype(np.int8)

    blocks = np.zeros(flat.shape[0], dtype=[("d", "<f2"), ("qs", "i1", (32,))])
    blocks["d"] = scales
    blocks["qs"] = qs
    return blocks.tobytes()


def q8_0_tensor(name: str, arr: np.ndarray) -> TensorSpec:
    return (name, tuple(arr.shape), GGML_TYPE_Q8_0, quantize_q8_0(arr))


# =============================================================================
# Tiny Qwen2
# =============================================================================

TINY_CONFIG = {
    "vocab_size": 32,
    "hidden_dim": 32,
    "num_layers": 2,
    "num_heads": 4,
    "num_kv_heads": 2,
    "intermediate_dim": 64,
    "context_length": 64,
}


def tiny_qwen2_metadata(architecture: str = "qwen2") -> Dict[str, object]:
    c = TINY_CONFIG
    return {
        "general.architecture": architecture,
        "general.name": "tiny-qwen2",
        f"{architecture}.context_length": c["context_length"],
        f"{architecture}.embedding_length": c["hidden_dim"],
        f"{architecture}.block_count": c["num_layers"],
        f"{architecture}.feed_forward_length": c["intermediate_dim"],
        f"{architecture}.attention.head_count": c["num_heads"],
        f"{architecture}.attention.head_count_kv": c["num_kv_heads"],
        f"{architecture}.attention.layer_norm_rms_epsilon": 1e-6,
        f"{architecture}.rope.freq_base": 10000.0,
    }


def tiny_qwen2_weights(seed: int = 0, tied: bool = True) -> Dict[str, np.ndarray]:
    """Random weights in GGUF naming, numpy (PyTorch) order."""
    c = TINY_CONFIG
    rng = np.random.default_rng(seed)
    head_dim = c["hidden_dim"] // c["num_heads"]
    q_dim = c["num_heads"] * head_dim
    kv_dim = c["num_kv_heads"] * head_dim

    def w(*shape):
        return (rng.standard_normal(shape) * 0.2).astype(np.float32)

    def norm(dim):
        return (1.0 + rng.standard_normal(dim) * 0.05).astype(np.float32)

    weights = {
        "token_embd.weight": w(c["vocab_size"], c["hidden_dim"]),
        "output_norm.weight": norm(c["hidden_dim"]),
    }
    if not tied:
        weights["output.weight"] = w(c["vocab_size"], c["hidden_dim"])

    for i in range(c["num_layers"]):
        weights.update({
            f"blk.{i}.attn_norm.weight": norm(c["hidden_dim"]),
            f"blk.{i}.attn_q.weight": w(q_dim, c["hidden_dim"]),
            f"blk.{i}.attn_q.bias": w(q_dim),
            f"blk.{i}.attn_k.weight": w(kv_dim, c["hidden_dim"]),
            f"blk.{i}.attn_k.bias": w(kv_dim),
            f"blk.{i}.attn_v.weight": w(kv_dim, c["hidden_dim"]),
            f"blk.{i}.attn_v.bias": w(kv_dim),
            f"blk.{i}.attn_output.weight": w(c["hidden_dim"], q_dim),
            f"blk.{i}.ffn_norm.weight": norm(c["hidden_dim"]),
            f"blk.{i}.ffn_gate.weight": w(c["intermediate_dim"], c["hidden_dim"]),
            f"blk.{i}.ffn_up.weight": w(c["intermediate_dim"], c["hidden_dim"]),
            f"blk.{i}.ffn_down.weight": w(c["hidden_dim"], c["intermediate_dim"]),
        })
    return weights


def write_tiny_qwen2(
    path: Path,
    weights: Optional[Dict[str, np.ndarray]] = None,
    metadata: Optional[Dict[str, object]] = None,
    quantize: bool = False,
) -> Path:
    """Tiny qwen2 GGUF; with quantize=True the 2-D matrices are stored as Q8_0."""
    weights = tiny_qwen2_weights() if weights is None else weights
    metadata = tiny_qwen2_metadata() if metadata is None else metadata
    tensors = []
    for name, arr in weights.items():
        if quantize and arr.ndim == 2:
            tensors.append(q8_0_tensor(name, arr))
        else:
            tensors.append(f32_tensor(name, arr))
    return write_gguf(path, metadata, tensors)


@pytest.fixture
def gguf_writer() -> Callable[..., Path]:
    return write_gguf


@pytest.fixture
def tiny_model_path(tmp_path) -> Path:
    return write_tiny_qwen2(tmp_path / "tiny.gguf")


@pytest.fixture
def tiny_model(tiny_model_path):
    from legal_engine.inference import load_model
    return load_model(tiny_model_path, device="cpu", dtype=torch.float32)


# =============================================================================
# Tiny Tokenizer
# =============================================================================

TINY_WORDS = [
    "system", "user", "assistant", "hello", "world", "judgment", "patent",
    "claim", "court", "the", "is", "a", "of", "and", "{", "}", "\"title\":",
    "infringement", "denied", "granted", "defendant", "plaintiff", "product",
    "element", "satisfied", "case", "report", "summary",
]


def build_tiny_tokenizer(with_specials: bool = True):
    """Word-level tokenizer with Qwen2-style special tokens; 32 entries with specials."""
    from tokenizers import Tokenizer, models, pre_tokenizers

    vocab = {"[UNK]": 0}
    specials = ["<|endoftext|>", "<|im_start|>", "<|im_end|>"] if with_specials else []
    for token in specials + TINY_WORDS:
        vocab[token] = len(vocab)

    tokenizer = Tokenizer(models.WordLevel(vocab=vocab, unk_token="[UNK]"))
    tokenizer.pre_tokenizer = pre_tokenizers.WhitespaceSplit()
    if specials:
        tokenizer.add_special_tokens(specials)
    return tokenizer


@pytest.fixture
def tiny_tokenizer_path(tmp_path) -> Path:
    path = tmp_path / "tokenizer.json"
    build_tiny_tokenizer().save(str(path))
    return path


@pytest.fixture
def tiny_tokenizer(tiny_tokenizer_path):
    from legal_engine.inference import TokenizerAdapter
    return TokenizerAdapter.from_file(tiny_tokenizer_path)


# =============================================================================
# Scripted Model
# =============================================================================

class ScriptedModel:
    """
    Stand-in for TransformerModel.

    Emits a one-hot logits vector for script[i] on the i-th forward call
    (repeating the last entry), records every call, and tracks how many
    decode sessions overlap.
    """

    def __init__(self, script: List[int], vocab_size: int = 32, delay: float = 0.0,
                 fail_on_call: Optional[int] = None):
        self.script = list(script)
        self.vocab_size = vocab_size
        self.delay = delay
        self.fail_on_call = fail_on_call
        self.calls: List[Tuple[List[int], int]] = []
        self.resets = 0
        self.active = 0
        self.max_active = 0
        self._step = 0
        self._guard = threading.Lock()

    def forward(self, token_ids, start_position: int) -> torch.Tensor:
        token_ids = list(token_ids)
        if start_position == 0:
            self._step = 0
            with self._guard:
                self.active += 1
                self.max_active = max(self.max_active, self.active)
        self.calls.append((token_ids, start_position))
        if self.fail_on_call is not None and len(self.calls) > self.fail_on_call:
            raise RuntimeError("forward exploded")
        if self.delay:
            time.sleep(self.delay)

        token = self.script[min(self._step, len(self.script) - 1)]
        self._step += 1
        logits = torch.zeros(self.vocab_size)
        logits[token] = 100.0
        return logits

    def reset_cache(self):
        self.resets += 1
        with self._guard:
            if self.active:
                self.active -= 1


@pytest.fixture
def scripted_model_factory() -> Callable[..., ScriptedModel]:
    return ScriptedModel


# =============================================================================
# Pipeline Stand-ins
# =============================================================================

VALID_OUTPUT = """```json
{
  "title": "特許権侵害差止等請求事件",
  "case_no": "令和3年(ワ)第12345号",
  "date": "2023-04-27",
  "result": "請求棄却",
  "summary": "被告製品は構成要件Bを充足しない。",
  "keywords": ["特許", "構成要件"],
  "claim_chart": [
    {"requirement": "1A", "defendant": "box", "judgment": "satisfied", "is_satisfied": true},
    {"requirement": "1B", "defendant": "lid", "judgment": "not satisfied", "is_satisfied": false}
  ]
}
```"""


class StubSource:
    def __init__(self, text: str = "judgment text", results=None, error: Optional[Exception] = None):
        self.text = text
        self.results = results or []
        self.error = error
        self.fetched: List[int] = []
        self.searches: List[dict] = []

    async def fetch_and_extract(self, case_id: int) -> str:
        self.fetched.append(case_id)
        if self.error is not None:
            raise self.error
        return self.text

    async def search(self, keyword=None, filter=None, limit=10):
        self.searches.append({"keyword": keyword, "filter": filter, "limit": limit})
        if self.error is not None:
            raise self.error
        return self.results[:limit]


class StubEngine:
    def __init__(self, output: str = VALID_OUTPUT):
        self.output = output
        self.requests: List[Tuple[str, str]] = []
        self.in_flight = 0

    def generate(self, system: str, user: str) -> str:
        self.requests.append((system, user))
        return self.output


class StubCompiler:
    """Writes a fake PDF, or raises CompileError when fail=True."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.compiled: List[Tuple[Path, Path]] = []

    async def compile(self, source_path, artifact_path=None) -> Path:
        from legal_engine.errors import CompileError

        source_path = Path(source_path)
        artifact_path = Path(artifact_path) if artifact_path else source_path.with_suffix(".pdf")
        self.compiled.append((source_path, artifact_path))
        if self.fail:
            raise CompileError("typst compile exited with 1: error: unexpected token")
        artifact_path.write_bytes(b"%PDF-1.7\n%stub\n")
        return artifact_path


@pytest.fixture
def valid_output() -> str:
    return VALID_OUTPUT


@pytest.fixture
def stub_source() -> StubSource:
    return StubSource()


@pytest.fixture
def stub_engine() -> StubEngine:
    return StubEngine()


@pytest.fixture
def stub_compiler() -> StubCompiler:
    return StubCompiler()


@pytest.fixture
def pipeline_factory(tmp_path):
    """Build a CasePipeline writing under tmp_path/output with stubbed collaborators."""
    from legal_engine.pipeline import CasePipeline, FilePromptStore, PipelineConfig

    prompt_path = tmp_path / "prompt.md"
    prompt_path.write_text("Extract JSON.", encoding="utf-8")

    def create(engine=None, source=None, compiler=None, prompt_path=prompt_path):
        config = PipelineConfig(output_dir=tmp_path / "output", prompt_path=prompt_path)
        return CasePipeline(
            engine or StubEngine(),
            config=config,
            source=source or StubSource(),
            prompts=FilePromptStore(prompt_path),
            compiler=compiler or StubCompiler(),
        )

    return create


# =============================================================================
# Markers Configuration
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "integration: marks integration tests")
