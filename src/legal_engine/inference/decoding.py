"""
Autoregressive decoding loop.

Two states:
    PROMPT  one forward call over the whole prompt, filling the KV cache
    DECODE  one forward call per sampled token

Every sampled token is appended before the stop checks run, so an
end-of-turn token is always the last element of a terminated sequence.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Protocol, Sequence
import logging

import torch

from .sampling import LogitsSampler

logger = logging.getLogger(__name__)

MAX_NEW_TOKENS = 1000
PROGRESS_INTERVAL = 100


class StatefulModel(Protocol):
    def forward(self, token_ids: Sequence[int], start_position: int) -> torch.Tensor: ...


class DecodeState(Enum):
    PROMPT = "prompt"
    DECODE = "decode"


@dataclass
class DecodeResult:
    tokens: List[int] = field(default_factory=list)
    finish_reason: str = "length"  # "eos" or "length"
    prompt_tokens: int = 0


class DecodeLoop:
    """Drives a stateful model from a prompt to end-of-turn or the token cap."""

    def __init__(
        self,
        model: StatefulModel,
        sampler: LogitsSampler,
        eos_id: int,
        max_new_tokens: int = MAX_NEW_TOKENS,
    ):
        if max_new_tokens < 1:
            raise ValueError(f"max_new_tokens must be positive, got {max_new_tokens}")
        self.model = model
        self.sampler = sampler
        self.eos_id = eos_id
        self.max_new_tokens = max_new_tokens
        self.state = DecodeState.PROMPT

    def run(self, prompt_ids: Sequence[int]) -> DecodeResult:
        if not prompt_ids:
            raise ValueError("Cannot decode from an empty prompt")

        result = DecodeResult(prompt_tokens=len(prompt_ids))
        self.state = DecodeState.PROMPT
        position = 0
        pending: Sequence[int] = list(prompt_ids)

        while True:
            logits = self.model.forward(pending, start_position=position)
            position += len(pending)

            token = self.sampler.sample(logits)
            result.tokens.append(token)
            self.state = DecodeState.DECODE

            if token == self.eos_id:
                result.finish_reason = "eos"
                break
            if len(result.tokens) >= self.max_new_tokens:
                result.finish_reason = "length"
                break

            if len(result.tokens) % PROGRESS_INTERVAL == 0:
                logger.debug(f"Generated {len(result.tokens)} tokens")

            pending = [token]

        logger.debug(f"Decode finished: {len(result.tokens)} tokens ({result.finish_reason})")
        return result
