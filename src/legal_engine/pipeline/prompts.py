"""System prompt store backed by a Markdown file."""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


class FilePromptStore:
    """Reads the prompt on every call so edits apply without a restart. Never fails."""

    def __init__(self, path: str | Path = "prompts/ip_force.md"):
        self.path = Path(path)

    def system_prompt(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Cannot read prompt {self.path} ({e}), using default")
            return DEFAULT_SYSTEM_PROMPT
