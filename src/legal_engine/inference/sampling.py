"""
Next-token sampling: temperature scaling plus nucleus (top-p) truncation,
drawn from a seeded generator so identical requests reproduce.
"""

from typing import Optional

import torch

DEFAULT_SEED = 1337
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 0.95


def top_p_filter(logits: torch.Tensor, p: float) -> torch.Tensor:
    """Mask everything outside the smallest token set whose probability mass exceeds p."""
    if p >= 1.0:
        return logits

    sorted_logits, sorted_indices = torch.sort(logits, descending=True, dim=-1)
    cumulative_probs = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)

    # Shift right so the token crossing the threshold is kept
    sorted_indices_to_remove = cumulative_probs > p
    sorted_indices_to_remove[..., 1:] = sorted_indices_to_remove[..., :-1].clone()
    sorted_indices_to_remove[..., 0] = False

    indices_to_remove = sorted_indices_to_remove.scatter(-1, sorted_indices, sorted_indices_to_remove)
    return logits.masked_fill(indices_to_remove, float("-inf"))


class LogitsSampler:
    """
    Stateful sampler; one instance per generation.

    The generator advances with every draw, so a fresh sampler with the same
    seed replays the same sequence for the same logits.
    """

    def __init__(
        self,
        seed: int = DEFAULT_SEED,
        temperature: Optional[float] = DEFAULT_TEMPERATURE,
        top_p: Optional[float] = DEFAULT_TOP_P,
    ):
        self.seed = seed
        self.temperature = temperature
        self.top_p = top_p
        self._generator = torch.Generator(device="cpu")
        self._generator.manual_seed(seed)

    @property
    def greedy(self) -> bool:
        return self.temperature is None or self.temperature <= 0

    def sample(self, logits: torch.Tensor) -> int:
        """Draw one token id from a [vocab_size] logits vector."""
        logits = logits.detach().float().cpu()
        if self.greedy:
            return int(logits.argmax(dim=-1).item())

        logits = logits / self.temperature
        if self.top_p is not None:
            logits = top_p_filter(logits, self.top_p)

        probs = torch.softmax(logits, dim=-1)
        return int(torch.multinomial(probs, num_samples=1, generator=self._generator).item())
