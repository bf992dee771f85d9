"""
legal-engine CLI

Commands:
- serve: load the model once and run the HTTP API
- analyze: run one case through the pipeline
- search: query IP Force for judgments
- inspect: show GGUF metadata and tensors
- version: show version information
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .errors import LegalEngineError, LoadError

app = typer.Typer(
    name="legal-engine",
    help="Patent judgment analysis with a local language model",
    no_args_is_help=True,
)
console = Console()

logger = logging.getLogger(__name__)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _build_pipeline(
    model_path: Optional[Path],
    tokenizer_path: Optional[Path],
    device: Optional[str],
    output_dir: Optional[Path],
):
    """Load the engine (fatal on failure) and wire the pipeline around it."""
    from legal_engine.inference import EngineConfig, InferenceEngine
    from legal_engine.pipeline import CasePipeline, PipelineConfig

    engine_config = EngineConfig.from_env(
        model_path=str(model_path) if model_path else None,
        tokenizer_path=str(tokenizer_path) if tokenizer_path else None,
        device=device,
    )
    try:
        engine = InferenceEngine.from_config(engine_config)
    except LoadError as e:
        console.print(f"[red]Failed to load model: {e}[/red]")
        raise typer.Exit(1)

    return CasePipeline(engine, config=PipelineConfig.from_env(output_dir=output_dir))


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind address"),
    port: int = typer.Option(3000, help="Bind port"),
    model_path: Optional[Path] = typer.Option(None, "--model", "-m", help="Local GGUF file"),
    tokenizer_path: Optional[Path] = typer.Option(None, "--tokenizer", "-t", help="Local tokenizer.json"),
    device: Optional[str] = typer.Option(None, help="auto, cuda or cpu"),
    output_dir: Optional[Path] = typer.Option(None, "--output", "-o", help="Report output directory"),
):
    """Load the model and serve the HTTP API."""
    import uvicorn
    from legal_engine.api import create_app

    pipeline = _build_pipeline(model_path, tokenizer_path, device, output_dir)
    console.print(f"[green]Serving on http://{host}:{port}[/green]")
    uvicorn.run(create_app(pipeline), host=host, port=port)


@app.command()
def analyze(
    case_id: int = typer.Argument(..., help="IP Force judgment number"),
    model_path: Optional[Path] = typer.Option(None, "--model", "-m", help="Local GGUF file"),
    tokenizer_path: Optional[Path] = typer.Option(None, "--tokenizer", "-t", help="Local tokenizer.json"),
    device: Optional[str] = typer.Option(None, help="auto, cuda or cpu"),
    output_dir: Optional[Path] = typer.Option(None, "--output", "-o", help="Report output directory"),
):
    """Analyze one judgment and compile its report."""
    pipeline = _build_pipeline(model_path, tokenizer_path, device, output_dir)
    outcome = asyncio.run(pipeline.analyze(case_id))

    if not outcome.success:
        console.print(f"[red]Analysis failed: {outcome.error}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]{outcome.title}[/green] ({outcome.case_no})")
    console.print(f"Report: {outcome.artifact_path}")


@app.command()
def search(
    keyword: Optional[str] = typer.Option(None, "--keyword", "-k", help="Search keyword"),
    filter: Optional[str] = typer.Option(None, "--filter", help="Right type (accepted, not applied)"),
    limit: int = typer.Option(10, help="Maximum results"),
):
    """Search IP Force judgments."""
    from legal_engine.pipeline import IpForceSource, PipelineConfig

    config = PipelineConfig.from_env()
    source = IpForceSource(config.base_url, timeout=config.fetch_timeout)
    try:
        results = asyncio.run(source.search(keyword=keyword, filter=filter, limit=limit))
    except LegalEngineError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"IP Force: {keyword or 'latest'}")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    for result in results:
        table.add_row(str(result.id), result.title)
    console.print(table)


@app.command()
def inspect(
    path: Path = typer.Argument(..., help="GGUF file"),
    tensors: int = typer.Option(20, help="Tensors to list (0 for all)"),
):
    """Show GGUF metadata and tensor summary."""
    from legal_engine.inference import inspect_gguf

    try:
        info = inspect_gguf(path)
    except LoadError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(f"GGUF v{info['version']}, {info['n_tensors']} tensors")

    meta_table = Table(title="Metadata")
    meta_table.add_column("Key", style="cyan")
    meta_table.add_column("Value")
    for key, value in info["metadata"].items():
        # Vocabulary arrays run to 150k entries
        if isinstance(value, list):
            value = f"[{len(value)} items]"
        meta_table.add_row(key, str(value))
    console.print(meta_table)

    tensor_table = Table(title="Tensors")
    tensor_table.add_column("Name", style="cyan")
    tensor_table.add_column("Shape")
    tensor_table.add_column("Type", style="green")
    tensor_table.add_column("Bytes")
    items = list(info["tensors"].items())
    for name, t in items[:tensors] if tensors else items:
        nbytes = "unsupported" if t["nbytes"] is None else f"{t['nbytes']:,}"
        tensor_table.add_row(name, str(t["shape"]), t["dtype"], nbytes)
    console.print(tensor_table)


@app.command()
def version():
    """Show version information."""
    from legal_engine import __version__

    console.print(f"legal-engine version {__version__}")


if __name__ == "__main__":
    app()
