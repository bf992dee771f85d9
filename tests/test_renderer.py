"""
Tests for the Typst renderer.
"""

import pytest

from legal_engine.errors import RenderError
from legal_engine.pipeline import Case, ClaimRow, TypstRenderer, typst_escape


def _case(**fields):
    defaults = dict(
        case_id=14753,
        title="特許権侵害差止等請求事件",
        case_no="令和3年(ワ)第12345号",
        date="2023-04-27",
        result="請求棄却",
        summary="被告製品は構成要件Bを充足しない。",
        keywords=("特許", "均等論"),
        claim_chart=(
            ClaimRow(requirement="1A", defendant="box", judgment="ok", is_satisfied=True),
            ClaimRow(requirement="1B", defendant="lid", judgment="ng", is_satisfied=False),
        ),
    )
    defaults.update(fields)
    return Case(**defaults)


class TestEscape:
    def test_markup_characters(self):
        assert typst_escape("#set [x] *b* _i_ $m$") == "\\#set \\[x\\] \\*b\\* \\_i\\_ \\$m\\$"

    def test_plain_text_untouched(self):
        assert typst_escape("構成要件 1A") == "構成要件 1A"

    def test_backslash(self):
        assert typst_escape("a\\b") == "a\\\\b"

    def test_numbered_list_marker(self):
        assert typst_escape("1. 原告は") == "1\\. 原告は"
        assert typst_escape("前文\n12. 被告は\n  3. 附帯") == "前文\n12\\. 被告は\n  3\\. 附帯"

    def test_inline_number_untouched(self):
        assert typst_escape("請求項1.5倍") == "請求項1.5倍"

    def test_numbered_summary_renders_as_text(self):
        source = TypstRenderer().render(_case(summary="1. 原告は特許権者である。"))
        assert "1\\. 原告は特許権者である。" in source

    def test_comment_and_label(self):
        assert typst_escape("// <x> @y") == "\\/\\/ \\<x\\> \\@y"


class TestRender:
    def test_contains_fields(self):
        source = TypstRenderer().render(_case())
        assert "特許権侵害差止等請求事件" in source
        assert "令和3年(ワ)第12345号" in source
        assert "被告製品は構成要件Bを充足しない。" in source
        assert "IP Force No. 14753" in source
        assert "均等論" in source

    def test_claim_chart_rows(self):
        source = TypstRenderer().render(_case())
        assert "[1A], [box], [ok], [○]," in source
        assert "[1B], [lid], [ng], [×]," in source

    def test_no_claim_chart_section_when_empty(self):
        source = TypstRenderer().render(_case(claim_chart=()))
        assert "クレームチャート" not in source

    def test_model_text_cannot_inject_markup(self):
        source = TypstRenderer().render(_case(summary='#import "evil.typ": *'))
        assert '\\#import \\"evil.typ\\": \\*' in source
        assert "\n#import" not in source

    def test_title_in_document_metadata(self):
        source = TypstRenderer().render(_case(title='A "quoted" title'))
        assert '#set document(title: "A \\"quoted\\" title")' in source

    def test_pure(self):
        renderer = TypstRenderer()
        case = _case()
        assert renderer.render(case) == renderer.render(case)

    def test_empty_title(self):
        with pytest.raises(RenderError, match="title"):
            TypstRenderer().render(_case(title=""))

    def test_empty_case_no(self):
        with pytest.raises(RenderError, match="case_no"):
            TypstRenderer().render(_case(case_no=""))

    def test_template_missing_field(self, tmp_path):
        (tmp_path / "broken.typ.j2").write_text("= {{ court_name }}\n", encoding="utf-8")
        renderer = TypstRenderer(template_dir=tmp_path, template_name="broken.typ.j2")
        with pytest.raises(RenderError):
            renderer.render(_case())
