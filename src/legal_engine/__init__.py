"""
legal-engine - Patent judgment analysis with a local language model

Fetches a judgment from IP Force, extracts a structured analysis with a
quantized Qwen2 model running in-process, and compiles the result into a
Typst report.

Core components:
- inference: GGUF weight loading, tokenizer adapter, KV-cached decoding, engine
- pipeline: fetch -> prompt -> generate -> parse -> render -> compile
- api: FastAPI surface (analyze, search, artifact download)
- cli: serve / analyze / search / inspect commands
"""

__version__ = "0.1.0"
