"""Telegram rendering of bridge transcripts.

Transcript markdown is split into sections, flattened to quoted markdown and
converted to the HTML subset Telegram accepts (<b>, <i>, <s>, <code>, <pre>,
<a href>, <blockquote>).
"""

import itertools
import re
from typing import Any, Optional

import mistune

from core.sections import UNKNOWN_HEADING_ANSWER, parse_sections
from platforms.render import render_plain_text

TRUNCATION_MARKER = "\n... (truncated)"

_TAG_RE = re.compile(r"<[^>]+>")
_EXTRA_BLANKS_RE = re.compile(r"\n{3,}")
# Placeholder bullet, numbered once the enclosing list is known to be ordered.
_ITEM_MARK = "\x1f"


def escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def unescape_html(text: str) -> str:
    return text.replace("&lt;", "<").replace("&gt;", ">").replace("&amp;", "&")


def strip_html_tags(text: str) -> str:
    return _TAG_RE.sub("", text)


def _wrap(tag: str, inner: str) -> str:
    return f"<{tag}>{inner}</{tag}>"


class TranscriptHTMLRenderer(mistune.HTMLRenderer):
    """mistune renderer restricted to Telegram's tag set.

    Headings collapse to bold lines, quotes become expandable blockquotes
    (thinking and tool steps stay folded by default), and tables are laid out
    as plain rows since Telegram has no table markup.
    """

    def text(self, text: str) -> str:
        """Escape plain text."""
        return escape_html(text)

    def emphasis(self, text: str) -> str:
        """Render *italic* text."""
        return _wrap("i", text)

    def strong(self, text: str) -> str:
        """Render **bold** text."""
        return _wrap("b", text)

    def strikethrough(self, text: str) -> str:
        """Render ~~struck~~ text."""
        return _wrap("s", text)

    def codespan(self, text: str) -> str:
        """Render `inline code`."""
        return _wrap("code", escape_html(text))

    def block_code(self, code: str, info: Optional[str] = None) -> str:
        """Render a fenced or indented code block."""
        return _wrap("pre", escape_html(code.rstrip("\n"))) + "\n\n"

    def link(self, text: str, url: str, title: Optional[str] = None) -> str:
        """Render a link."""
        return f'<a href="{escape_html(url)}">{text}</a>'

    def image(self, text: str, url: str, title: Optional[str] = None) -> str:
        """Render an image as a link to it."""
        return self.link(text or escape_html(url), url)

    def heading(self, text: str, level: int, **attrs: Any) -> str:
        """Render a heading as a bold line."""
        return _wrap("b", text) + "\n"

    def paragraph(self, text: str) -> str:
        """Render a paragraph."""
        return text + "\n\n"

    def linebreak(self) -> str:
        """Render a hard line break."""
        return "\n"

    def softbreak(self) -> str:
        """Render a soft line break."""
        return "\n"

    def blank_line(self) -> str:
        """Render a blank line."""
        return "\n"

    def thematic_break(self) -> str:
        """Render a horizontal rule."""
        return "\n──────────\n"

    def block_quote(self, text: str) -> str:
        """Render a quote as an expandable blockquote."""
        return f"<blockquote expandable>{text.strip()}</blockquote>\n\n"

    def list_item(self, text: str) -> str:
        """Render a list item with a placeholder mark."""
        return f"{_ITEM_MARK}{text.strip()}\n"

    def list(self, text: str, ordered: bool, **attrs: Any) -> str:
        """Render a list, numbering items when ordered."""
        if not ordered:
            return text.replace(_ITEM_MARK, "• ") + "\n"
        numbers = itertools.count(attrs.get("start") or 1)
        return re.sub(_ITEM_MARK, lambda _: f"{next(numbers)}. ", text) + "\n"

    # table plugin

    def table(self, text: str) -> str:
        """Render a table as plain rows."""
        return text + "\n"

    def table_head(self, text: str) -> str:
        """Render the header row."""
        return text.rstrip(" │") + "\n"

    def table_body(self, text: str) -> str:
        """Render the table body."""
        return text

    def table_row(self, text: str) -> str:
        """Render one table row."""
        return text.rstrip(" │") + "\n"

    def table_cell(self, text: str, align: Optional[str] = None, head: bool = False) -> str:
        """Render one cell; header cells are bold."""
        return f"{_wrap('b', text) if head else text} │ "


_render_markdown = mistune.create_markdown(
    renderer=TranscriptHTMLRenderer(),
    plugins=["strikethrough", "table"],
)


def markdown_to_html(text: str) -> str:
    """Markdown -> Telegram HTML; escaped source text if mistune chokes."""
    try:
        html = str(_render_markdown(text))
    except Exception:
        return escape_html(text)
    return _EXTRA_BLANKS_RE.sub("\n\n", html).strip()


def render_transcript(markdown: str, unknown_heading_policy: str = UNKNOWN_HEADING_ANSWER) -> str:
    """Bridge transcript -> sectioned markdown -> Telegram HTML."""
    sections = parse_sections(markdown, unknown_heading_policy)
    return markdown_to_html(render_plain_text(sections))


def split_text(text: str, max_len: int = 3500) -> list[str]:
    """Split text into chunks of at most max_len, preferring line then word breaks."""
    chunks = []
    while len(text) > max_len:
        split_pos = text.rfind("\n", 0, max_len)
        if split_pos < max_len // 2:
            split_pos = text.rfind(" ", 0, max_len)
        if split_pos < max_len // 2:
            split_pos = max_len
        chunks.append(text[:split_pos])
        text = text[split_pos:].lstrip()
    if text or not chunks:
        chunks.append(text)
    return chunks


def fit_message(html_text: str, max_len: int = 4096) -> tuple[str, bool]:
    """Fit rendered HTML into one Telegram message.

    Returns:
        (text, is_html). Oversized HTML can't be cut safely between tags, so
        it degrades to truncated plain text.
    """
    if len(html_text) <= max_len:
        return html_text, True
    plain = unescape_html(strip_html_tags(html_text))
    return plain[:max_len - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER, False


def render_chunks(
    markdown: str,
    unknown_heading_policy: str = UNKNOWN_HEADING_ANSWER,
    max_len: int = 4096,
    chunk_len: int = 3500,
) -> list[tuple[str, bool]]:
    """Render a transcript as one or more Telegram messages.

    Returns:
        [(text, is_html), ...]. A transcript that renders within max_len is a
        single HTML message; a longer one is split on the sectioned markdown
        and each piece rendered on its own, so the tail is never dropped.
    """
    sectioned = render_plain_text(parse_sections(markdown, unknown_heading_policy))
    html_text = markdown_to_html(sectioned)
    if len(html_text) <= max_len:
        return [(html_text, True)]
    return [fit_message(markdown_to_html(chunk), max_len) for chunk in split_text(sectioned, chunk_len)]
