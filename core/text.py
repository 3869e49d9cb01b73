"""Plain-text normalization shared by problem loading and prompt assembly."""

from __future__ import annotations

import html
import re

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")


def strip_html(text: str) -> str:
    """Reduce an HTML problem statement to single-spaced plain text."""

    return _WS_RE.sub(" ", html.unescape(_TAG_RE.sub(" ", str(text or "")))).strip()
