"""Typst compiler wrapper: `typst compile <src> <pdf>` as an async subprocess."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from ..errors import CompileError

logger = logging.getLogger(__name__)


class TypstCompiler:
    def __init__(self, binary: str = "typst"):
        self.binary = binary

    async def compile(self, source_path: str | Path, artifact_path: Optional[str | Path] = None) -> Path:
        """
        Compile a .typ file to PDF.

        Args:
            source_path: Typst source file
            artifact_path: output PDF (defaults to source_path with .pdf suffix)

        Returns:
            Path of the written PDF

        Raises:
            CompileError: binary missing, non-zero exit, or no PDF written
        """
        source_path = Path(source_path)
        artifact_path = Path(artifact_path) if artifact_path else source_path.with_suffix(".pdf")

        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, "compile", str(source_path), str(artifact_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CompileError(f"Cannot run {self.binary}: {e}") from e

        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise CompileError(f"{self.binary} compile exited with {proc.returncode}: {detail}")
        if not artifact_path.exists():
            raise CompileError(f"{self.binary} reported success but {artifact_path} is missing")

        logger.info(f"Compiled {artifact_path}")
        return artifact_path
