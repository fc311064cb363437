"""
Chat Helper Utilities
Common utility functions for the chat service
"""

import time
import unicodedata
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple


def utcnow() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def strip_accents(text: str) -> str:
    """
    Lower-case and remove diacritics so Portuguese input matches
    regardless of how the user typed it.

    Example:
        >>> strip_accents("São Paulo")
        'sao paulo'
    """
    normalized = unicodedata.normalize("NFKD", text.lower())
    return "".join(ch for ch in normalized if not unicodedata.combining(ch))


def dedup_key(role: str, content: str) -> Tuple[str, str]:
    """Identity of a message for duplicate suppression"""
    return (str(role), (content or "").strip())


def truncate_text(text: str, max_length: int = 100, suffix: str = "...") -> str:
    """
    Truncate text to max length

    Args:
        text: Input text
        max_length: Maximum length including suffix
        suffix: Suffix to add if truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - len(suffix)].rstrip() + suffix


def format_brl(cents: Optional[int]) -> str:
    """
    Format integer cents as Brazilian reais.

    Example:
        >>> format_brl(300000)
        'R$ 3.000,00'
    """
    if cents is None:
        return "-"
    reais, centavos = divmod(int(cents), 100)
    return f"R$ {reais:,}".replace(",", ".") + f",{centavos:02d}"


def parse_brl_amount(number: str, multiplier: Optional[str] = None) -> Optional[int]:
    """
    Parse a Brazilian-formatted amount into integer cents

    Example:
        >>> parse_brl_amount("3.000,50")
        300050
        >>> parse_brl_amount("3", "mil")
        300000
    """
    text = number.strip(".,")
    if not text:
        return None

    if "," in text:
        integer, decimal = text.rsplit(",", 1)
        integer = integer.replace(".", "")
        if len(decimal) == 3:
            # "3,000" written with a thousands comma
            integer, decimal = integer + decimal, "0"
    else:
        parts = text.split(".")
        if len(parts) > 1 and all(len(p) == 3 for p in parts[1:]):
            integer, decimal = "".join(parts), "0"
        else:
            integer, decimal = parts[0], (parts[1] if len(parts) > 1 else "0")

    try:
        value = float(f"{integer or '0'}.{decimal or '0'}")
    except ValueError:
        return None

    if multiplier in ("mil", "k"):
        value *= 1000

    cents = int(round(value * 100))
    return cents if cents > 0 else None


class RecentMessageWindow:
    """
    Rolling window of recently seen message keys.

    A key counts as a duplicate while it was seen less than `window_seconds`
    ago. At most `max_size` keys are remembered; the oldest fall out first.
    """

    def __init__(
        self,
        window_seconds: float = 5.0,
        max_size: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_size = max_size
        self._clock = clock
        self._seen: "OrderedDict[Tuple[str, str], float]" = OrderedDict()

    def _expire(self, now: float) -> None:
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self.window_seconds and len(self._seen) <= self.max_size:
                break
            self._seen.popitem(last=False)

    def is_duplicate(self, role: str, content: str) -> bool:
        """Check-and-record. True when the same key is still inside the window."""
        key = dedup_key(role, content)
        if not key[1]:
            return False
        now = self._clock()
        self._expire(now)
        if key in self._seen:
            return True
        self._seen[key] = now
        self._expire(now)
        return False

    def forget(self, role: str, content: str) -> None:
        self._seen.pop(dedup_key(role, content), None)

    def __len__(self) -> int:
        return len(self._seen)
