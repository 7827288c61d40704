"""Platform-neutral rendering of parsed transcript sections."""

from __future__ import annotations

from dataclasses import dataclass

from core.types import ParsedSections

WORKING_PLACEHOLDER = "Allocating resources..."

STATUS_MAX_LENGTH = 100
STATUS_SEPARATOR = " | "
_DONE_TOKENS = ("done", "stop", "finish", "idle")


@dataclass(frozen=True)
class HeaderStyle:
    """Header label and accent color for a rendered message."""

    title: str
    template: str


DEFAULT_HEADER = HeaderStyle("🤖 AI Assistant", "blue")
ANSWER_HEADER = HeaderStyle("📝 Answer", "blue")
TOOLS_HEADER = HeaderStyle("🧰 Tools / Steps", "wathet")
THINKING_HEADER = HeaderStyle("🤔 Thinking Process", "turquoise")


def pick_header(sections: ParsedSections) -> HeaderStyle:
    """Choose header framing: answer, then tools, then thinking."""
    if sections.answer.strip():
        return ANSWER_HEADER
    if sections.tools.strip():
        return TOOLS_HEADER
    if sections.thinking.strip():
        return THINKING_HEADER
    return DEFAULT_HEADER


def format_status_line(status: str) -> str:
    """Compress status text to one emoji-prefixed line."""
    lowered = status.lower()
    emoji = "✅" if any(token in lowered for token in _DONE_TOKENS) else "⚡️"
    clean = status.replace("\n", STATUS_SEPARATOR)[:STATUS_MAX_LENGTH]
    return f"{emoji} {clean}"


def _quote(text: str) -> str:
    return "\n".join(f"> {line}" for line in text.strip().split("\n"))


def strip_quote_markers(text: str) -> str:
    lines = []
    for line in text.strip().split("\n"):
        stripped = line.lstrip()
        if stripped.startswith(">"):
            stripped = stripped[1:]
            if stripped.startswith(" "):
                stripped = stripped[1:]
        lines.append(stripped)
    return "\n".join(lines).strip()


def render_plain_text(sections: ParsedSections) -> str:
    """Render sections as quoted markdown for surfaces without cards.

    Order: thinking, tools, separator, answer, status line.
    """
    blocks: list[str] = []

    thinking = strip_quote_markers(sections.thinking)
    if thinking:
        blocks.append(_quote(f"💭 Thinking\n{thinking}"))

    tools = sections.tools.strip()
    if tools:
        blocks.append(_quote(f"⚙️ Execution\n{tools}"))

    answer = sections.answer.strip()
    status = sections.status.strip()
    if answer:
        if blocks:
            blocks.append("---")
        blocks.append(answer)
    elif not status and not thinking:
        blocks.append(WORKING_PLACEHOLDER)

    if status:
        blocks.append(format_status_line(status))

    return "\n\n".join(blocks)
