"""
Case Pipeline

Turns a judgment id into a compiled report:

    fetch -> truncate -> prompt -> generate -> parse -> render -> compile

Each stage produces a new immutable Case snapshot. Failures short-circuit
with a LegalEngineError subclass; CasePipeline.analyze() turns them into a
structured AnalysisOutcome for callers that must not raise.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

ENV_PREFIX = "LEGAL_ENGINE_"


# =============================================================================
# Model output schema
# =============================================================================

class ClaimRow(BaseModel):
    """One claim-chart row: a claim requirement against the accused product."""

    model_config = ConfigDict(frozen=True)

    requirement: str
    defendant: str
    judgment: str
    is_satisfied: bool


class CaseAnalysis(BaseModel):
    """Structured analysis the model is asked to emit as JSON. Absent fields stay empty."""

    model_config = ConfigDict(frozen=True)

    title: str = ""
    case_no: str = ""
    date: str = ""
    result: str = ""
    summary: str = ""
    keywords: list[str] = Field(default_factory=list)
    claim_chart: list[ClaimRow] = Field(default_factory=list)


# =============================================================================
# Case snapshots and results
# =============================================================================

@dataclass(frozen=True)
class Case:
    """A judgment moving through the pipeline. Stages return new snapshots."""

    case_id: int
    source_text: str = ""
    title: str = ""
    case_no: str = ""
    date: str = ""
    result: str = ""
    summary: str = ""
    keywords: tuple[str, ...] = ()
    claim_chart: tuple[ClaimRow, ...] = ()

    @property
    def id(self) -> str:
        """Artifact stem, also used for output file names."""
        return f"ip_force_{self.case_id}"


class SearchResult(BaseModel):
    id: int
    title: str
    date: str = ""


class AnalysisOutcome(BaseModel):
    """Result payload for one pipeline run."""

    success: bool
    title: Optional[str] = None
    case_no: Optional[str] = None
    artifact_path: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class PipelineConfig:
    """Configuration for the case pipeline and its collaborators."""

    output_dir: Path = field(default_factory=lambda: Path("output"))
    prompt_path: Path = field(default_factory=lambda: Path("prompts/ip_force.md"))
    max_source_chars: int = 5000
    base_url: str = "https://ipforce.jp/Hanketsu"
    fetch_timeout: float = 30.0
    typst_binary: str = "typst"

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """Defaults, then LEGAL_ENGINE_* environment variables, then explicit overrides."""
        values = {}
        if os.environ.get(f"{ENV_PREFIX}OUTPUT_DIR"):
            values["output_dir"] = Path(os.environ[f"{ENV_PREFIX}OUTPUT_DIR"])
        if os.environ.get(f"{ENV_PREFIX}PROMPT_PATH"):
            values["prompt_path"] = Path(os.environ[f"{ENV_PREFIX}PROMPT_PATH"])
        if os.environ.get(f"{ENV_PREFIX}TYPST"):
            values["typst_binary"] = os.environ[f"{ENV_PREFIX}TYPST"]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


from .source import IpForceSource, extract_judgment_text, parse_search_results
from .prompts import FilePromptStore, DEFAULT_SYSTEM_PROMPT
from .parser import extract_json_span, parse_case_output, apply_analysis
from .renderer import TypstRenderer, typst_escape
from .compiler import TypstCompiler
from .runner import CasePipeline

__all__ = [
    # Data model
    "ClaimRow",
    "CaseAnalysis",
    "Case",
    "SearchResult",
    "AnalysisOutcome",
    "PipelineConfig",
    # Collaborators
    "IpForceSource",
    "extract_judgment_text",
    "parse_search_results",
    "FilePromptStore",
    "DEFAULT_SYSTEM_PROMPT",
    "TypstRenderer",
    "typst_escape",
    "TypstCompiler",
    # Stages
    "extract_json_span",
    "parse_case_output",
    "apply_analysis",
    "CasePipeline",
]
