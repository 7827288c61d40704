"""Feishu/Lark interactive card rendering.

Turns the bridge's markdown transcript into the card JSON the Feishu message
API accepts for ``msg_type="interactive"``.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from core.sections import UNKNOWN_HEADING_ANSWER, parse_sections
from core.types import ParsedSections
from platforms.render import WORKING_PLACEHOLDER, format_status_line, pick_header, strip_quote_markers


def lark_md(content: str) -> dict[str, Any]:
    return {"tag": "div", "text": {"tag": "lark_md", "content": content}}


def collapsible_panel(title: str, content: str, expanded: bool = False) -> Optional[dict[str, Any]]:
    """Grey collapsible panel, or None when there is nothing to show."""
    body = (content or "").strip()
    if not body:
        return None
    return {
        "tag": "collapsible_panel",
        "expanded": expanded,
        "background_style": "grey",
        "header": {"title": {"tag": "plain_text", "content": title}},
        "border": {"top": True, "bottom": True},
        "elements": [lark_md(body)],
    }


def render_card(sections: ParsedSections) -> dict[str, Any]:
    """Build the card dict for parsed sections."""
    header = pick_header(sections)
    elements: list[dict[str, Any]] = []

    thinking_panel = collapsible_panel("💭 Thinking", strip_quote_markers(sections.thinking))
    if thinking_panel:
        elements.append(thinking_panel)

    tools_panel = collapsible_panel("⚙️ Execution", sections.tools)
    if tools_panel:
        if elements:
            elements.append(lark_md(" "))
        elements.append(tools_panel)

    answer = sections.answer.strip()
    status = sections.status.strip()
    if answer:
        if elements:
            elements.append({"tag": "hr"})
        elements.append(lark_md(answer))
    elif not status and not sections.thinking.strip():
        elements.append(lark_md(WORKING_PLACEHOLDER))

    if status:
        elements.append({"tag": "hr"})
        elements.append({
            "tag": "note",
            "elements": [{"tag": "plain_text", "content": format_status_line(status)}],
        })

    return {
        "config": {"wide_screen_mode": True},
        "header": {
            "template": header.template,
            "title": {"tag": "plain_text", "content": header.title},
        },
        "elements": elements,
    }


def render_markdown_card(markdown: str, unknown_heading_policy: str = UNKNOWN_HEADING_ANSWER) -> str:
    """Parse a transcript and serialize its card as JSON."""
    sections = parse_sections(markdown, unknown_heading_policy)
    return json.dumps(render_card(sections), ensure_ascii=False)
