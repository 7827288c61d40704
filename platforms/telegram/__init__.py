"""Telegram platform implementation."""

from .client import TelegramAdapter
from .formatter import (
    escape_html,
    fit_message,
    markdown_to_html,
    render_chunks,
    render_transcript,
    split_text,
    strip_html_tags,
)

__all__ = [
    "TelegramAdapter",
    "escape_html",
    "fit_message",
    "markdown_to_html",
    "render_chunks",
    "render_transcript",
    "split_text",
    "strip_html_tags",
]
