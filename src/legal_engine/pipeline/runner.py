"""
Case pipeline runner.

    fetch -> truncate -> prompt -> generate -> parse -> render -> compile

Generation is compute-bound and runs in a worker thread; the engine's own
lock keeps it to one decode session at a time.
"""

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional, Protocol

from . import AnalysisOutcome, Case, PipelineConfig
from .compiler import TypstCompiler
from .parser import apply_analysis, parse_case_output
from .prompts import FilePromptStore
from .renderer import TypstRenderer
from .source import DocumentSource, IpForceSource
from ..errors import LegalEngineError

logger = logging.getLogger(__name__)


class TextGenerator(Protocol):
    def generate(self, system: str, user: str) -> str: ...


class CasePipeline:
    """
    Usage:
        pipeline = CasePipeline(engine, config=PipelineConfig.from_env())
        outcome = await pipeline.analyze(14753)
    """

    def __init__(
        self,
        engine: TextGenerator,
        config: Optional[PipelineConfig] = None,
        source: Optional[DocumentSource] = None,
        prompts: Optional[FilePromptStore] = None,
        renderer: Optional[TypstRenderer] = None,
        compiler: Optional[TypstCompiler] = None,
    ):
        self.engine = engine
        self.config = config or PipelineConfig()
        self.source = source or IpForceSource(self.config.base_url, timeout=self.config.fetch_timeout)
        self.prompts = prompts or FilePromptStore(self.config.prompt_path)
        self.renderer = renderer or TypstRenderer()
        self.compiler = compiler or TypstCompiler(self.config.typst_binary)

    def source_path(self, case: Case) -> Path:
        return Path(self.config.output_dir) / f"{case.id}.typ"

    def artifact_path(self, case: Case) -> Path:
        return Path(self.config.output_dir) / f"{case.id}.pdf"

    async def process(self, case_id: int) -> tuple[Case, Path]:
        """
        Run every stage for one case.

        Returns:
            (final Case snapshot, compiled PDF path)

        Raises:
            LegalEngineError subclass of the first failing stage, or OSError
            when the output directory cannot be written
        """
        case = Case(case_id=case_id)

        # 1. Fetch
        logger.info(f"[{case.id}] fetching")
        text = await self.source.fetch_and_extract(case_id)
        case = replace(case, source_text=text[: self.config.max_source_chars])
        logger.info(f"[{case.id}] fetched {len(text)} chars, using {len(case.source_text)}")

        # 2. Generate
        system_prompt = self.prompts.system_prompt()
        logger.info(f"[{case.id}] generating")
        output = await asyncio.to_thread(self.engine.generate, system_prompt, case.source_text)

        # 3. Parse
        case = apply_analysis(case, parse_case_output(output))
        logger.info(f"[{case.id}] parsed: {case.title} ({case.case_no})")

        # 4. Render
        source = self.renderer.render(case)

        # 5. Compile
        source_path = self.source_path(case)
        artifact_path = self.artifact_path(case)
        source_path.parent.mkdir(parents=True, exist_ok=True)
        source_path.write_text(source, encoding="utf-8")
        artifact_path.unlink(missing_ok=True)
        await self.compiler.compile(source_path, artifact_path)

        logger.info(f"[{case.id}] wrote {artifact_path}")
        return case, artifact_path

    async def analyze(self, case_id: int) -> AnalysisOutcome:
        """process() with failures folded into the outcome instead of raised."""
        try:
            case, artifact_path = await self.process(case_id)
        except (LegalEngineError, OSError) as e:
            logger.error(f"[ip_force_{case_id}] failed: {type(e).__name__}: {e}")
            return AnalysisOutcome(success=False, error=f"{type(e).__name__}: {e}")

        return AnalysisOutcome(
            success=True,
            title=case.title,
            case_no=case.case_no,
            artifact_path=str(artifact_path),
        )
