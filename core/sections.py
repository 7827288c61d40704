"""Split a streaming markdown transcript into display sections.

The transcript is scanned once, line by line:

- A leading blockquote run is reasoning, unless the text carries an explicit
  ``## Thinking`` heading of its own.
- ``##``+ headings and whole-line bold headings (``**Title**``) open a
  section that runs until the next heading or the end of the text.
- Text before the first heading is the answer.
"""

from __future__ import annotations

import re
from typing import Optional

from core.types import ParsedSections

UNKNOWN_HEADING_ANSWER = "answer"
UNKNOWN_HEADING_DROP = "drop"

_HASH_HEADING = re.compile(r"^(#{2,})\s*(.*?)\s*$")
_BOLD_HEADING = re.compile(r"^\*\*([^*]+)\*\*\s*:?\s*$")
_EXPLICIT_THINKING = re.compile(r"^#{2,}\s*Thinking\b", re.MULTILINE)

_BUCKET_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("thinking", ("think", "思")),
    ("tools", ("tool", "step", "工具")),
    ("status", ("status", "状态")),
    ("answer", ("answer", "回答")),
)


def _is_quote(line: str) -> bool:
    return line.lstrip().startswith(">")


def _heading_title(line: str) -> Optional[str]:
    """Return the heading text if the line is a heading, else None."""
    match = _HASH_HEADING.match(line)
    if match:
        return match.group(2).rstrip(":").rstrip("*").strip()
    match = _BOLD_HEADING.match(line.strip())
    if match:
        return match.group(1).rstrip(":").strip()
    return None


def classify_heading(title: str) -> Optional[str]:
    """Map a heading title to a bucket name by keyword, or None."""
    lowered = title.lower()
    for bucket, keywords in _BUCKET_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return bucket
    return None


def _append(current: str, content: str) -> str:
    if not current:
        return content
    if not content:
        return current
    return f"{current}\n{content}"


def _split_leading_quote(lines: list[str]) -> tuple[list[str], list[str]]:
    if not lines or not _is_quote(lines[0]):
        return [], lines
    end = 0
    while end < len(lines) and _is_quote(lines[end]):
        end += 1
    return lines[:end], lines[end:]


def parse_sections(markdown: str, unknown_heading_policy: str = UNKNOWN_HEADING_ANSWER) -> ParsedSections:
    """Classify a transcript snapshot into thinking/tools/status/answer."""
    sections = ParsedSections()
    if not markdown:
        return sections

    lines = markdown.split("\n")
    if not _EXPLICIT_THINKING.search(markdown):
        quoted, lines = _split_leading_quote(lines)
        if quoted:
            sections.thinking = "\n".join(quoted)
    remainder = "\n".join(lines)

    preamble: list[str] = []
    title: Optional[str] = None
    body: list[str] = []

    def close_section() -> None:
        if title is None:
            return
        content = "\n".join(body)
        bucket = classify_heading(title)
        if bucket is not None:
            setattr(sections, bucket, _append(getattr(sections, bucket), content))
        elif unknown_heading_policy == UNKNOWN_HEADING_ANSWER:
            lead_in = f"\n**{title}**\n" if title else ""
            sections.answer = _append(sections.answer, f"{lead_in}{content}")

    for line in lines:
        heading = _heading_title(line)
        if heading is None:
            (body if title is not None else preamble).append(line)
            continue
        close_section()
        title = heading
        body = []
    close_section()

    if preamble:
        lead = "\n".join(preamble)
        sections.answer = lead + (f"\n{sections.answer}" if sections.answer else "")

    if sections.is_blank():
        sections.answer = remainder
    return sections
