"""Feishu/Lark platform implementation."""

from .adapter import FeishuAdapter
from .renderer import collapsible_panel, render_card, render_markdown_card

__all__ = [
    "FeishuAdapter",
    "collapsible_panel",
    "render_card",
    "render_markdown_card",
]
