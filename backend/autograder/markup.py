"""Plain text from submitted HTML."""

from __future__ import annotations

import html
import re
from typing import Optional

from bleach.sanitizer import Cleaner


_cleaner = Cleaner(tags=set(), attributes={}, strip=True, strip_comments=True)
_WHITESPACE = re.compile(r"\s+")


def strip_markup(text: Optional[str]) -> str:
    """Drop tags, decode entities and collapse whitespace.

    A ``<`` that does not open a tag is kept as text, so comparisons such as
    ``x < y`` survive.
    """
    if not text:
        return ""
    # Adjacent block tags would otherwise glue their words together.
    cleaned = _cleaner.clean(str(text).replace("<", " <"))
    return _WHITESPACE.sub(" ", html.unescape(cleaned)).strip()


__all__ = ["strip_markup"]
