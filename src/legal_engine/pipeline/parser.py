"""
Model output parsing.

The model is prompted for a single JSON object but often wraps it in a code
fence or chatter. The span from the first '{' to the last '}' is taken as the
object. Known limitation: stray braces in surrounding prose widen the span
and the parse fails.
"""

from dataclasses import replace
import logging

from pydantic import ValidationError

from . import Case, CaseAnalysis
from ..errors import ParseError

logger = logging.getLogger(__name__)


def extract_json_span(output: str) -> str:
    start = output.find("{")
    if start == -1:
        raise ParseError("No JSON object in model output (missing '{')")
    end = output.rfind("}")
    if end < start:
        raise ParseError("No JSON object in model output (missing closing '}')")
    return output[start:end + 1]


def parse_case_output(output: str) -> CaseAnalysis:
    """
    Validate the model's JSON against CaseAnalysis.

    Raises:
        ParseError: no span, malformed JSON, or fields of the wrong type
    """
    span = extract_json_span(output)
    try:
        return CaseAnalysis.model_validate_json(span)
    except ValidationError as e:
        raise ParseError(f"Model output failed validation: {e}") from e


def apply_analysis(case: Case, analysis: CaseAnalysis) -> Case:
    """New Case snapshot carrying the parsed fields."""
    return replace(
        case,
        title=analysis.title,
        case_no=analysis.case_no,
        date=analysis.date,
        result=analysis.result,
        summary=analysis.summary,
        keywords=tuple(analysis.keywords),
        claim_chart=tuple(analysis.claim_chart),
    )
