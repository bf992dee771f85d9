"""
Error taxonomy for the engine and the case pipeline.

Every failure a request can hit derives from LegalEngineError so callers can
turn it into a structured failure payload without catching unrelated bugs.
"""


class LegalEngineError(Exception):
    """Base class for all domain errors."""


class LoadError(LegalEngineError):
    """Model weights or tokenizer could not be loaded."""


class EncodingError(LegalEngineError):
    """Text could not be converted to or from token ids."""


class GenerationError(LegalEngineError):
    """Tokenizer or forward-pass failure during generation."""


class FetchError(LegalEngineError):
    """Document source unreachable or returned an error status."""


class ParseError(LegalEngineError):
    """Model output lacks a well-formed JSON span or fails validation."""


class RenderError(LegalEngineError):
    """Case is missing a field the report template requires."""


class CompileError(LegalEngineError):
    """External document compiler failed."""
