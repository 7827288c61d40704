"""Tests for platforms/render.py and the Feishu card renderer."""

import json
import sys
from pathlib import Path

PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from core.types import ParsedSections
from platforms.feishu.renderer import collapsible_panel, render_card, render_markdown_card
from platforms.render import (
    ANSWER_HEADER,
    DEFAULT_HEADER,
    THINKING_HEADER,
    TOOLS_HEADER,
    WORKING_PLACEHOLDER,
    format_status_line,
    pick_header,
    render_plain_text,
    strip_quote_markers,
)


class TestHeaderAndStatus:
    def test_pick_header_priority(self):
        assert pick_header(ParsedSections(answer="a", tools="t", thinking="x")) == ANSWER_HEADER
        assert pick_header(ParsedSections(tools="t", thinking="x")) == TOOLS_HEADER
        assert pick_header(ParsedSections(thinking="x")) == THINKING_HEADER
        assert pick_header(ParsedSections()) == DEFAULT_HEADER

    def test_status_done(self):
        assert format_status_line("idle") == "✅ idle"
        assert format_status_line("Finished") == "✅ Finished"

    def test_status_running_joins_lines(self):
        assert format_status_line("running\nstep 2") == "⚡️ running | step 2"

    def test_status_capped(self):
        line = format_status_line("x" * 300)
        assert line == "⚡️ " + "x" * 100

    def test_strip_quote_markers(self):
        assert strip_quote_markers("> a\n>b\nc") == "a\nb\nc"


class TestRenderCard:
    def test_full_card(self):
        card = render_card(ParsedSections(thinking="> hmm", tools="ran ls", answer="done it", status="idle"))
        assert card["config"] == {"wide_screen_mode": True}
        assert card["header"]["title"]["content"] == ANSWER_HEADER.title
        assert card["header"]["template"] == "blue"

        tags = [element["tag"] for element in card["elements"]]
        assert tags == ["collapsible_panel", "div", "collapsible_panel", "hr", "div", "hr", "note"]

        thinking_panel = card["elements"][0]
        assert thinking_panel["expanded"] is False
        assert thinking_panel["elements"][0]["text"]["content"] == "hmm"
        assert card["elements"][4]["text"]["content"] == "done it"
        assert card["elements"][6]["elements"][0]["content"] == "✅ idle"

    def test_empty_card_shows_placeholder(self):
        card = render_card(ParsedSections())
        assert card["header"]["title"]["content"] == DEFAULT_HEADER.title
        assert card["elements"] == [
            {"tag": "div", "text": {"tag": "lark_md", "content": WORKING_PLACEHOLDER}},
        ]

    def test_thinking_only_has_no_placeholder(self):
        card = render_card(ParsedSections(thinking="> pondering"))
        assert [e["tag"] for e in card["elements"]] == ["collapsible_panel"]
        assert card["header"]["template"] == THINKING_HEADER.template

    def test_answer_without_panels_has_no_rule(self):
        card = render_card(ParsedSections(answer="hi"))
        assert [e["tag"] for e in card["elements"]] == ["div"]

    def test_collapsible_panel_empty(self):
        assert collapsible_panel("x", "  ") is None

    def test_render_markdown_card_is_json(self):
        payload = json.loads(render_markdown_card("## Answer\n你好"))
        assert payload["elements"][0]["text"]["content"] == "你好"

    def test_render_markdown_card_keeps_unicode(self):
        assert "你好" in render_markdown_card("你好")


class TestRenderPlainText:
    def test_order(self):
        text = render_plain_text(ParsedSections(thinking="> a\n> b", tools="ran", answer="x", status="working"))
        assert text == "\n\n".join([
            "> 💭 Thinking\n> a\n> b",
            "> ⚙️ Execution\n> ran",
            "---",
            "x",
            "⚡️ working",
        ])

    def test_answer_only(self):
        assert render_plain_text(ParsedSections(answer="hello")) == "hello"

    def test_placeholder(self):
        assert render_plain_text(ParsedSections()) == WORKING_PLACEHOLDER
