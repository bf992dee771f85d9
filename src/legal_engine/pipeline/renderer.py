"""
Typst report renderer.

A pure projection of a Case through a Jinja2 template. Every interpolated
string goes through the `typst` filter so model output cannot inject markup.
"""

import logging
import re
from dataclasses import asdict
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from . import Case
from ..errors import RenderError

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"
DEFAULT_TEMPLATE = "patent_report.typ.j2"

# Characters with meaning in Typst markup
TYPST_SPECIAL = set("\\#*_`$<>@[]~/=-+\"")
# "1." opening a line starts a numbered list
ENUM_MARKER = re.compile(r"(?m)^(\s*\d+)\.")


def typst_escape(value) -> str:
    """Backslash-escape Typst markup characters in plain text."""
    escaped = "".join(f"\\{ch}" if ch in TYPST_SPECIAL else ch for ch in str(value))
    return ENUM_MARKER.sub(r"\1\\.", escaped)


def typst_string(value) -> str:
    """Escape text for use inside a Typst string literal."""
    return str(value).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class TypstRenderer:
    def __init__(self, template_dir: str | Path = TEMPLATE_DIR, template_name: str = DEFAULT_TEMPLATE):
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["typst"] = typst_escape
        self.env.filters["typst_string"] = typst_string
        self.template_name = template_name

    def render(self, case: Case) -> str:
        """
        Raises:
            RenderError: title or case_no empty, or the template needs a
                field the case does not have
        """
        missing = [name for name in ("title", "case_no") if not getattr(case, name)]
        if missing:
            raise RenderError(f"Case {case.case_id} has empty required fields: {', '.join(missing)}")

        context = asdict(case)
        context["claim_chart"] = [row.model_dump() for row in case.claim_chart]
        context["id"] = case.id
        try:
            return self.env.get_template(self.template_name).render(**context)
        except TemplateError as e:
            raise RenderError(f"Template {self.template_name} failed for case {case.case_id}: {e}") from e
