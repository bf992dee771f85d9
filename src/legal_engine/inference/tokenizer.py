"""
Tokenizer adapter over a HuggingFace tokenizer.json.

Special-token markup in prompt text (<|im_start|>, <|im_end|>) is matched as
added special tokens on encode and stripped again on decode.
"""

from pathlib import Path
from typing import Dict, List, Sequence
import logging

from tokenizers import Tokenizer

from ..errors import EncodingError, LoadError

logger = logging.getLogger(__name__)

# Qwen2 vocabulary ids, used when tokenizer.json lacks the entry
SPECIAL_TOKEN_DEFAULTS: Dict[str, int] = {
    "<|endoftext|>": 151643,
    "<|im_start|>": 151644,
    "<|im_end|>": 151645,
}


class TokenizerAdapter:
    """Thin encode/decode facade with special-token lookup."""

    def __init__(self, tokenizer: Tokenizer):
        self._tokenizer = tokenizer

    @classmethod
    def from_file(cls, path: str | Path) -> "TokenizerAdapter":
        try:
            tokenizer = Tokenizer.from_file(str(path))
        except Exception as e:
            raise LoadError(f"Cannot load tokenizer from {path}: {e}") from e
        logger.info(f"Loaded tokenizer from {path} ({tokenizer.get_vocab_size()} entries)")
        return cls(tokenizer)

    @property
    def vocab_size(self) -> int:
        return self._tokenizer.get_vocab_size()

    def encode(self, text: str) -> List[int]:
        if not isinstance(text, str):
            raise EncodingError(f"Expected str, got {type(text).__name__}")
        try:
            return self._tokenizer.encode(text, add_special_tokens=False).ids
        except Exception as e:
            raise EncodingError(f"Failed to encode text: {e}") from e

    def decode(self, ids: Sequence[int]) -> str:
        try:
            return self._tokenizer.decode(list(ids), skip_special_tokens=True)
        except Exception as e:
            raise EncodingError(f"Failed to decode {len(ids)} tokens: {e}") from e

    def lookup_special(self, name: str) -> int:
        """Resolve a special token to its id, falling back to the Qwen2 default."""
        token_id = self._tokenizer.token_to_id(name)
        if token_id is not None:
            return token_id
        if name in SPECIAL_TOKEN_DEFAULTS:
            logger.debug(f"{name} not in vocabulary, using default id {SPECIAL_TOKEN_DEFAULTS[name]}")
            return SPECIAL_TOKEN_DEFAULTS[name]
        raise KeyError(f"Unknown special token: {name}")
