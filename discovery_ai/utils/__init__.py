# utils/__init__.py
"""Shared helpers for the chat service"""

from .chat_helpers import (
    utcnow,
    new_id,
    strip_accents,
    dedup_key,
    truncate_text,
    format_brl,
    parse_brl_amount,
    RecentMessageWindow,
)

__all__ = [
    "utcnow",
    "new_id",
    "strip_accents",
    "dedup_key",
    "truncate_text",
    "format_brl",
    "parse_brl_amount",
    "RecentMessageWindow",
]
