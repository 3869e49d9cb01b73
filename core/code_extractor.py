"""Recover a single executable program from free-form generator output.

Extraction is an ordered list of strategies; the first that yields code wins:

  1. closed fenced block tagged with the target language
  2. unclosed tagged fence, cut at the first prose boundary
  3. structural anchor scan (imports, class/function declarations) cut at
     the first prose boundary, accepted only if the expected top-level
     construct survived the cut
  4. unfenced text that already contains the top-level construct
  5. the raw text, unchanged

Each strategy is a line scanner moving through the states ``searching``,
``capturing`` and ``stopped``. Extraction never raises: when nothing is
recognised the raw text flows on to evaluation and fails there.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

SCAN_SEARCHING = "searching"
SCAN_CAPTURING = "capturing"
SCAN_STOPPED = "stopped"

FENCE = "```"

LANGUAGE_ALIASES: dict[str, tuple[str, ...]] = {
    "python": ("python", "python3", "py"),
    "javascript": ("javascript", "js", "node"),
    "typescript": ("typescript", "ts"),
    "java": ("java",),
    "cpp": ("cpp", "c++", "cc", "cxx"),
    "c": ("c",),
    "go": ("go", "golang"),
    "rust": ("rust", "rs"),
}


@dataclass(frozen=True)
class LanguageSignature:
    """Line-level start anchor and whole-text top-level construct for a language."""

    start: re.Pattern
    construct: re.Pattern
    comment_prefix: str


SIGNATURES: dict[str, LanguageSignature] = {
    "python": LanguageSignature(
        start=re.compile(r"^(?:from\s+[\w.]+\s+import\s|import\s+\w|class\s+\w+|def\s+\w+\s*\(|@\w+)"),
        construct=re.compile(r"^(?:class|def)\s+\w+", re.MULTILINE),
        comment_prefix="#",
    ),
    "javascript": LanguageSignature(
        start=re.compile(r"^(?:import\s|export\s|const\s|let\s|var\s|class\s+\w+|function\b|['\"]use strict['\"])"),
        construct=re.compile(r"^(?:export\s+)?(?:class|function|const|let|var)\s+\w+", re.MULTILINE),
        comment_prefix="//",
    ),
    "typescript": LanguageSignature(
        start=re.compile(r"^(?:import\s|export\s|const\s|let\s|class\s+\w+|function\b|interface\s+\w+|type\s+\w+)"),
        construct=re.compile(r"^(?:export\s+)?(?:class|function|const|let)\s+\w+", re.MULTILINE),
        comment_prefix="//",
    ),
    "java": LanguageSignature(
        start=re.compile(r"^(?:import\s+[\w.*]+;|package\s+[\w.]+;|(?:public\s+|final\s+)*class\s+\w+)"),
        construct=re.compile(r"^(?:public\s+|final\s+)*class\s+\w+", re.MULTILINE),
        comment_prefix="//",
    ),
    "cpp": LanguageSignature(
        start=re.compile(r"^(?:#include\b|using\s+namespace\b|class\s+\w+|struct\s+\w+|template\s*<)"),
        construct=re.compile(r"^(?:class|struct)\s+\w+|^\w[\w:<>\s\*&]*\bmain\s*\(", re.MULTILINE),
        comment_prefix="//",
    ),
    "c": LanguageSignature(
        start=re.compile(r"^(?:#include\b|#define\b|struct\s+\w+)"),
        construct=re.compile(r"^\w[\w\s\*]*\b\w+\s*\([^;]*\)\s*\{?\s*$", re.MULTILINE),
        comment_prefix="//",
    ),
    "go": LanguageSignature(
        start=re.compile(r"^(?:package\s+\w+|import\s|func\s)"),
        construct=re.compile(r"^func\s+", re.MULTILINE),
        comment_prefix="//",
    ),
    "rust": LanguageSignature(
        start=re.compile(r"^(?:use\s|fn\s|impl\b|struct\s|pub\s|mod\s)"),
        construct=re.compile(r"^(?:pub\s+)?(?:fn|impl|struct)\b", re.MULTILINE),
        comment_prefix="//",
    ),
}

# Boundaries only count on unindented lines; prose is never indented inside code.
_PROSE_BOUNDARY = re.compile(
    r"^(?:#{2,}\s"
    r"|\*{0,2}Explanation\b"
    r"|This approach\b"
    r"|\*{0,2}(?:Time|Space) Complexity\b"
    r"|\d+\.\s+\*\*)",
    re.IGNORECASE,
)
_ANCHOR_PROSE_BOUNDARY = re.compile(r"^(?:This|The)\s")

_STREAM_PROSE_PREFIXES = ("###", "Explanation", "This ", "The ", "We ", "Here ", "**")
_STREAM_PROSE_WORDS = ("approach", "solution", "because", "complexity")
_STREAM_CODE_TOKENS = (
    "class ",
    "def ",
    "return ",
    "import ",
    "from ",
    "function ",
    "const ",
    "let ",
    "self.",
    " = ",
    "(",
    "{",
    "}",
    ";",
    ":",
)


def normalize_language(language: str) -> str:
    """Map a language name or alias onto its canonical key."""

    lowered = str(language or "").strip().lower()
    for canonical, aliases in LANGUAGE_ALIASES.items():
        if lowered == canonical or lowered in aliases:
            return canonical
    return lowered


def is_prose_boundary(line: str, anchor_mode: bool = False) -> bool:
    """Return True for a line that marks the end of code and the start of prose."""

    if not line or line[0].isspace():
        return False
    if _PROSE_BOUNDARY.match(line):
        return True
    return anchor_mode and bool(_ANCHOR_PROSE_BOUNDARY.match(line))


def _fence_tag_pattern(language: str) -> re.Pattern:
    aliases = LANGUAGE_ALIASES.get(language, (language,))
    alternatives = "|".join(re.escape(alias) for alias in sorted(aliases, key=len, reverse=True))
    return re.compile(rf"{re.escape(FENCE)}\s*(?:{alternatives})\s*$", re.IGNORECASE)


def _scan_tagged_fence(lines: list[str], language: str) -> tuple[Optional[str], bool]:
    """Scan for a fence tagged with ``language``.

    Returns ``(captured_text, closed)``; ``captured_text`` is None when no
    tagged fence opens anywhere in the text.
    """

    opening = _fence_tag_pattern(language)
    state = SCAN_SEARCHING
    captured: list[str] = []
    closed = False

    for line in lines:
        if state == SCAN_SEARCHING:
            if opening.search(line):
                state = SCAN_CAPTURING
            continue

        if state == SCAN_CAPTURING:
            if FENCE in line:
                head = line.split(FENCE, 1)[0]
                if head.strip():
                    captured.append(head)
                closed = True
                state = SCAN_STOPPED
                break
            captured.append(line)

    if state == SCAN_SEARCHING:
        return None, False

    if not closed:
        cut: list[str] = []
        for line in captured:
            if is_prose_boundary(line):
                break
            cut.append(line)
        captured = cut

    return "\n".join(captured).strip(), closed


def _scan_structural_anchor(lines: list[str], signature: LanguageSignature) -> Optional[str]:
    """Collect from the first start-of-program line up to the first prose boundary."""

    state = SCAN_SEARCHING
    start_index = -1
    captured: list[str] = []

    for index, line in enumerate(lines):
        if state == SCAN_SEARCHING:
            if FENCE in line:
                continue
            if signature.start.match(line.lstrip()):
                state = SCAN_CAPTURING
                start_index = index
                captured.append(line)
            continue

        if state == SCAN_CAPTURING:
            if FENCE in line or is_prose_boundary(line, anchor_mode=True):
                state = SCAN_STOPPED
                break
            captured.append(line)

    if start_index < 0:
        return None

    leading = _leading_comment_lines(lines, start_index, signature.comment_prefix)
    return "\n".join(leading + captured).strip()


def _leading_comment_lines(lines: list[str], start_index: int, comment_prefix: str) -> list[str]:
    """Comment lines directly above the anchor; they are valid code and stay attached."""

    first = start_index
    cursor = start_index - 1
    while cursor >= 0:
        candidate = lines[cursor]
        stripped = candidate.strip()
        if not stripped:
            cursor -= 1
            continue
        if not stripped.startswith(comment_prefix) or FENCE in candidate:
            break
        if is_prose_boundary(candidate, anchor_mode=True):
            break
        first = cursor
        cursor -= 1
    return lines[first:start_index]


def extract_code(raw_text: str, language: str = "python") -> str:
    """Extract one clean program for ``language`` from ``raw_text``."""

    raw = str(raw_text or "")
    if not raw.strip():
        return raw

    canonical = normalize_language(language)
    lines = raw.splitlines()

    fenced, _closed = _scan_tagged_fence(lines, canonical)
    if fenced:
        return fenced

    signature = SIGNATURES.get(canonical)
    if signature is None:
        return raw

    anchored = _scan_structural_anchor(lines, signature)
    if anchored and signature.construct.search(anchored):
        return anchored

    if FENCE not in raw and signature.construct.search(raw):
        return raw.strip()

    return raw


def looks_like_code(line: str) -> bool:
    """Best-effort classification of one streamed line.

    Ambiguous lines pass; only lines that read as explanatory prose are
    suppressed.
    """

    stripped = line.strip()
    if not stripped:
        return True
    if line[:1].isspace():
        return True
    if stripped.startswith(FENCE):
        return False
    if stripped.startswith(_STREAM_PROSE_PREFIXES) or is_prose_boundary(stripped):
        return False
    if any(token in line for token in _STREAM_CODE_TOKENS):
        return True
    lowered = stripped.lower()
    if any(word in lowered for word in _STREAM_PROSE_WORDS):
        return False
    return True
