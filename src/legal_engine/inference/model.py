"""
Transformer Model for GGUF Inference

Pure PyTorch Qwen2 decoder built on our GGUF loader.
No llama-cpp dependency - just PyTorch.

Architecture:
- RMSNorm
- Q/K/V projections with bias, Grouped Query Attention
- RoPE (split-half / NeoX layout, base from rope.freq_base)
- SwiGLU FFN (gate_proj, up_proj, down_proj)
- Tied or separate output head

The model owns its KV cache. Callers feed new tokens together with the
absolute position of the first one; the cache grows by exactly the tokens
consumed, so a decode step costs one token of compute.

Usage:
    model = TransformerModel.from_gguf("model.gguf", device="cuda")
    logits = model.forward(prompt_ids, start_position=0)
    logits = model.forward([next_id], start_position=len(prompt_ids))
"""

import re
import torch
import torch.nn as nn
import torch.nn.functional as F
from typing import Optional, List, Tuple, Dict, Any, Sequence
from dataclasses import dataclass
from pathlib import Path
import logging
import math

from ..errors import LoadError
from .gguf_loader import GGUFReader

logger = logging.getLogger(__name__)

SUPPORTED_ARCHITECTURES = ("qwen2",)


@dataclass
class ModelConfig:
    """Model configuration extracted from GGUF metadata."""

    vocab_size: int
    hidden_dim: int
    num_layers: int
    num_heads: int
    num_kv_heads: int  # For GQA
    head_dim: int
    intermediate_dim: int
    rms_norm_eps: float = 1e-6
    rope_base: float = 1000000.0
    max_seq_len: int = 32768
    tie_embeddings: bool = True  # Share embed/lm_head weights

    @classmethod
    def from_gguf_metadata(
        cls,
        metadata: Dict[str, Any],
        vocab_size: int,
        tie_embeddings: bool = True,
    ) -> "ModelConfig":
        """Extract config from GGUF metadata."""
        arch = metadata.get("general.architecture")
        if arch not in SUPPORTED_ARCHITECTURES:
            raise LoadError(f"Unsupported architecture: {arch!r}")
        prefix = f"{arch}."

        def required(key: str):
            if prefix + key not in metadata:
                raise LoadError(f"Missing metadata key: {prefix}{key}")
            return metadata[prefix + key]

        hidden_dim = int(required("embedding_length"))
        num_heads = int(required("attention.head_count"))
        num_kv_heads = int(metadata.get(f"{prefix}attention.head_count_kv", num_heads))
        if num_heads % num_kv_heads != 0:
            raise LoadError(f"head_count {num_heads} not divisible by head_count_kv {num_kv_heads}")

        return cls(
            vocab_size=vocab_size,
            hidden_dim=hidden_dim,
            num_layers=int(required("block_count")),
            num_heads=num_heads,
            num_kv_heads=num_kv_heads,
            head_dim=hidden_dim // num_heads,
            intermediate_dim=int(required("feed_forward_length")),
            rms_norm_eps=float(metadata.get(f"{prefix}attention.layer_norm_rms_epsilon", 1e-6)),
            rope_base=float(metadata.get(f"{prefix}rope.freq_base", 1000000.0)),
            max_seq_len=int(metadata.get(f"{prefix}context_length", 32768)),
            tie_embeddings=tie_embeddings,
        )


class RMSNorm(nn.Module):
    """Root Mean Square Layer Normalization."""

    def __init__(self, dim: int, eps: float = 1e-6):
        super().__init__()
        self.eps = eps
        self.weight = nn.Parameter(torch.ones(dim))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x_f32 = x.float()
        rms = torch.rsqrt(torch.mean(x_f32 * x_f32, dim=-1, keepdim=True) + self.eps)
        return (x_f32 * rms).to(x.dtype) * self.weight


class SwiGLUFFN(nn.Module):
    """SwiGLU Feed-Forward Network."""

    def __init__(self, hidden_dim: int, intermediate_dim: int):
        super().__init__()
        self.gate_proj = nn.Linear(hidden_dim, intermediate_dim, bias=False)
        self.up_proj = nn.Linear(hidden_dim, intermediate_dim, bias=False)
        self.down_proj = nn.Linear(intermediate_dim, hidden_dim, bias=False)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.down_proj(F.silu(self.gate_proj(x)) * self.up_proj(x))


def rope_tables(
    positions: torch.Tensor,
    head_dim: int,
    base: float,
    dtype: torch.dtype,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """cos/sin tables of shape [seq_len, head_dim] for the given absolute positions."""
    inv_freq = 1.0 / (
        base ** (torch.arange(0, head_dim, 2, device=positions.device, dtype=torch.float32) / head_dim)
    )
    freqs = torch.outer(positions.float(), inv_freq)
    emb = torch.cat([freqs, freqs], dim=-1)
    return emb.cos().to(dtype), emb.sin().to(dtype)


def rotate_half(x: torch.Tensor) -> torch.Tensor:
    half = x.shape[-1] // 2
    return torch.cat([-x[..., half:], x[..., :half]], dim=-1)


def apply_rope(x: torch.Tensor, cos: torch.Tensor, sin: torch.Tensor) -> torch.Tensor:
    return x * cos + rotate_half(x) * sin


class Attention(nn.Module):
    """Multi-head attention with RoPE, GQA and a private KV cache."""

    def __init__(
        self,
        hidden_dim: int,
        num_heads: int,
        num_kv_heads: int,
        head_dim: int,
    ):
        super().__init__()
        self.num_heads = num_heads
        self.num_kv_heads = num_kv_heads
        self.head_dim = head_dim
        self.num_kv_groups = num_heads // num_kv_heads

        self.q_proj = nn.Linear(hidden_dim, num_heads * head_dim, bias=True)
        self.k_proj = nn.Linear(hidden_dim, num_kv_heads * head_dim, bias=True)
        self.v_proj = nn.Linear(hidden_dim, num_kv_heads * head_dim, bias=True)
        self.o_proj = nn.Linear(num_heads * head_dim, hidden_dim, bias=False)

        # [batch, kv_heads, cached_len, head_dim], stored before GQA expansion
        self.cache_k: Optional[torch.Tensor] = None
        self.cache_v: Optional[torch.Tensor] = None

    def reset_cache(self):
        self.cache_k = None
        self.cache_v = None

    def forward(
        self,
        hidden_states: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        batch, seq_len, _ = hidden_states.shape

        # Project
        q = self.q_proj(hidden_states)
        k = self.k_proj(hidden_states)
        v = self.v_proj(hidden_states)

        # Reshape
        q = q.view(batch, seq_len, self.num_heads, self.head_dim).transpose(1, 2)
        k = k.view(batch, seq_len, self.num_kv_heads, self.head_dim).transpose(1, 2)
        v = v.view(batch, seq_len, self.num_kv_heads, self.head_dim).transpose(1, 2)

        # Apply RoPE
        q = apply_rope(q, cos, sin)
        k = apply_rope(k, cos, sin)

        # Extend the cache
        if self.cache_k is not None:
            k = torch.cat([self.cache_k, k], dim=2)
            v = torch.cat([self.cache_v, v], dim=2)
        self.cache_k = k
        self.cache_v = v

        # Expand KV for GQA if needed
        if self.num_kv_groups > 1:
            k = k.repeat_interleave(self.num_kv_groups, dim=1)
            v = v.repeat_interleave(self.num_kv_groups, dim=1)

        # Attention
        scale = 1.0 / math.sqrt(self.head_dim)
        scores = torch.matmul(q, k.transpose(-2, -1)) * scale

        if mask is not None:
            scores = scores + mask

        attn_weights = F.softmax(scores, dim=-1, dtype=torch.float32).to(q.dtype)
        attn_out = torch.matmul(attn_weights, v)

        # Output
        attn_out = attn_out.transpose(1, 2).contiguous().view(batch, seq_len, -1)
        return self.o_proj(attn_out)


class TransformerBlock(nn.Module):
    """Single transformer block."""

    def __init__(self, config: ModelConfig):
        super().__init__()

        self.input_layernorm = RMSNorm(config.hidden_dim, config.rms_norm_eps)
        self.self_attn = Attention(
            hidden_dim=config.hidden_dim,
            num_heads=config.num_heads,
            num_kv_heads=config.num_kv_heads,
            head_dim=config.head_dim,
        )
        self.post_attention_layernorm = RMSNorm(config.hidden_dim, config.rms_norm_eps)
        self.mlp = SwiGLUFFN(config.hidden_dim, config.intermediate_dim)

    def forward(
        self,
        hidden_states: torch.Tensor,
        cos: torch.Tensor,
        sin: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        # Self attention
        residual = hidden_states
        hidden_states = self.input_layernorm(hidden_states)
        hidden_states = residual + self.self_attn(hidden_states, cos, sin, mask)

        # FFN
        residual = hidden_states
        hidden_states = self.post_attention_layernorm(hidden_states)
        return residual + self.mlp(hidden_states)


class TransformerModel(nn.Module):
    """
    Qwen2 decoder loaded from GGUF.

    Stateful: forward() consumes new tokens at a given absolute position and
    extends the per-layer KV cache. Immutable weights, mutable cache; one
    caller at a time (the engine serializes access).
    """

    def __init__(self, config: ModelConfig):
        super().__init__()
        self.config = config

        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_dim)
        self.layers = nn.ModuleList([
            TransformerBlock(config) for _ in range(config.num_layers)
        ])
        self.norm = RMSNorm(config.hidden_dim, config.rms_norm_eps)

        # LM head - may be tied to embeddings
        if config.tie_embeddings:
            self.lm_head = None  # Will use embed_tokens.weight
        else:
            self.lm_head = nn.Linear(config.hidden_dim, config.vocab_size, bias=False)

        self._cached_length = 0

    @property
    def cached_length(self) -> int:
        """Number of tokens currently held in the KV cache."""
        return self._cached_length

    @property
    def device(self) -> torch.device:
        return self.embed_tokens.weight.device

    @property
    def dtype(self) -> torch.dtype:
        return self.embed_tokens.weight.dtype

    def reset_cache(self):
        for layer in self.layers:
            layer.self_attn.reset_cache()
        self._cached_length = 0

    @classmethod
    def from_gguf(
        cls,
        path: str | Path,
        device: str = "cuda",
        dtype: torch.dtype = torch.float16,
    ) -> "TransformerModel":
        """
        Load model from GGUF file.

        Raises:
            LoadError: on any malformed file, unsupported architecture or
                weights that do not fit the architecture
        """
        logger.info(f"Loading model from {path}")

        with GGUFReader(path) as reader:
            reader.validate()

            # Vocab size comes from the embedding tensor (not always in metadata)
            emb_info = reader.tensors.get("token_embd.weight")
            if emb_info is None:
                raise LoadError("Missing tensor: token_embd.weight")
            tie_embeddings = "output.weight" not in reader.tensors

            config = ModelConfig.from_gguf_metadata(
                reader.metadata,
                vocab_size=emb_info.shape[0],
                tie_embeddings=tie_embeddings,
            )
            logger.info(f"Config: {config.num_layers} layers, {config.hidden_dim} hidden, "
                        f"{config.num_heads} heads ({config.num_kv_heads} kv), "
                        f"{config.vocab_size} vocab, tied={config.tie_embeddings}")

            # Build without allocating, then assign the dequantized weights
            with torch.device("meta"):
                model = cls(config)

            state_dict = {}
            skipped = 0
            for name in reader.tensors:
                param_name = cls._map_tensor_name(name)
                if param_name is None:
                    logger.debug(f"Skipping unmapped tensor {name}")
                    skipped += 1
                    continue
                state_dict[param_name] = reader.read_tensor(name, device=device, dtype=dtype)

        try:
            model.load_state_dict(state_dict, strict=True, assign=True)
        except RuntimeError as e:
            raise LoadError(f"Weights do not match {config.num_layers}-layer qwen2 layout: {e}") from e

        logger.info(f"Loaded {len(state_dict)} tensors, skipped {skipped}")
        return model.eval()

    @staticmethod
    def _map_tensor_name(gguf_name: str) -> Optional[str]:
        """Map GGUF tensor name to PyTorch parameter name."""
        mappings = {
            "token_embd.weight": "embed_tokens.weight",
            "output.weight": "lm_head.weight",
            "output_norm.weight": "norm.weight",
        }

        if gguf_name in mappings:
            return mappings[gguf_name]

        # Block tensors: blk.{i}.{component}
        match = re.match(r"blk\.(\d+)\.(.+)", gguf_name)
        if match:
            layer_idx = match.group(1)
            component = match.group(2)

            component_map = {
                # Attention projections
                "attn_q.weight": "self_attn.q_proj.weight",
                "attn_q.bias": "self_attn.q_proj.bias",
                "attn_k.weight": "self_attn.k_proj.weight",
                "attn_k.bias": "self_attn.k_proj.bias",
                "attn_v.weight": "self_attn.v_proj.weight",
                "attn_v.bias": "self_attn.v_proj.bias",
                "attn_output.weight": "self_attn.o_proj.weight",
                # FFN
                "ffn_gate.weight": "mlp.gate_proj.weight",
                "ffn_up.weight": "mlp.up_proj.weight",
                "ffn_down.weight": "mlp.down_proj.weight",
                # Norms
                "attn_norm.weight": "input_layernorm.weight",
                "ffn_norm.weight": "post_attention_layernorm.weight",
            }

            if component in component_map:
                return f"layers.{layer_idx}.{component_map[component]}"

        return None

    @torch.inference_mode()
    def forward(
        self,
        token_ids: Sequence[int] | torch.Tensor,
        start_position: int,
    ) -> torch.Tensor:
        """
        Consume new tokens and return logits for the last one.

        Args:
            token_ids: new token IDs (1-D)
            start_position: absolute position of token_ids[0]; 0 starts a
                fresh cache, anything else must equal cached_length

        Returns:
            logits: [vocab_size] float32
        """
        if not isinstance(token_ids, torch.Tensor):
            token_ids = torch.tensor(list(token_ids), dtype=torch.long)
        token_ids = token_ids.reshape(-1)
        seq_len = token_ids.shape[0]
        if seq_len == 0:
            raise ValueError("forward() needs at least one token")

        if start_position == 0:
            self.reset_cache()
        elif start_position != self._cached_length:
            raise ValueError(
                f"start_position {start_position} does not match cached length {self._cached_length}"
            )

        total_len = start_position + seq_len
        if total_len > self.config.max_seq_len:
            raise ValueError(
                f"Sequence of {total_len} tokens exceeds context length {self.config.max_seq_len}"
            )

        device = self.device
        input_ids = token_ids.to(device).unsqueeze(0)
        positions = torch.arange(start_position, total_len, device=device)
        cos, sin = rope_tables(positions, self.config.head_dim, self.config.rope_base, self.dtype)

        # Causal mask over the new tokens; cached positions are all visible
        if seq_len > 1:
            mask = torch.full((seq_len, seq_len), float("-inf"), device=device, dtype=self.dtype)
            mask = torch.triu(mask, diagonal=1)
            if start_position > 0:
                past_mask = torch.zeros((seq_len, start_position), device=device, dtype=self.dtype)
                mask = torch.cat([past_mask, mask], dim=1)
        else:
            mask = None

        hidden_states = self.embed_tokens(input_ids)
        for layer in self.layers:
            hidden_states = layer(hidden_states, cos, sin, mask)
        self._cached_length = total_len

        hidden_states = self.norm(hidden_states[:, -1, :])

        # LM head (tied or separate)
        if self.lm_head is not None:
            logits = self.lm_head(hidden_states)
        else:
            logits = F.linear(hidden_states, self.embed_tokens.weight)

        return logits[0].float()


# =============================================================================
# Convenience Functions
# =============================================================================

def load_model(
    path: str | Path,
    device: str = "cuda",
    dtype: torch.dtype = torch.float16,
) -> TransformerModel:
    """Load a GGUF model."""
    return TransformerModel.from_gguf(path, device, dtype)
