"""
DB Coach Streaming - Content Normalizer
=======================================

Strips generation meta-commentary (decorations, streaming markers,
banners, progress chatter, labelled metadata lines) from raw stage
content before it is revealed or parsed.

The normalizer is an ordered list of pure rules. Fenced code blocks are
never touched. The rule chain is run to a fixed point, so normalizing
already-normalized text is a no-op, and an over-trimming guard returns
the input unchanged when cleaning would destroy a substantial document.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from dbcoach.core.config import settings


# ==========================================================================
# Patterns
# ==========================================================================

# Closed fences, or an unterminated fence running to end of text
CODE_FENCE = re.compile(r"```[\s\S]*?(?:```|\Z)")

DECORATIVE_SYMBOLS = re.compile(
    "["
    "\U0001F300-\U0001FAFF"  # pictographs, emoticons, transport, symbols
    "\u2600-\u27BF"          # misc symbols and dingbats
    "\u2B00-\u2BFF"          # arrows and stars
    "\u2500-\u259F"          # box drawing and blocks
    "\uFE0F\u200D"           # variation selector, zero-width joiner
    "]+[ \t]?"
)
DECORATIVE_LINE = re.compile(r"^[ \t]*[-=*_~#]{3,}[ \t]*$", re.MULTILINE)

STREAMING_MARKERS = re.compile(
    r"^[ \t]*\[(?:STREAMING|PROGRESS|THINKING|DONE|STREAM[_ ]END|COMPLETE)\][ \t]*",
    re.MULTILINE | re.IGNORECASE,
)

BANNER_LINE = re.compile(
    r"^[ \t]*(?:={2,}|\*{3,}|-{2,}|>{2,})[ \t]*[^\n=*\->]+?[ \t]*(?:={2,}|\*{3,}|-{2,}|<{2,})[ \t]*$",
    re.MULTILINE,
)
META_HEADING = re.compile(
    r"^[ \t]*(?:#{1,6}[ \t]*)?(?:Here(?:'s| is| are)|Below (?:is|are)|I (?:have|will|'ll))\b[^\n]*:[ \t]*$",
    re.MULTILINE | re.IGNORECASE,
)

PROGRESS_PHRASE = re.compile(
    r"\b(?:Generating|Processing|Analyzing|Analysing|Thinking|Loading|Preparing|Finalizing)\b[^.\n]*\.\.\.",
)
PROGRESS_BAR = re.compile(r"\[[#=>\-. ]{4,}\][ \t]*\d{1,3}%")
PROGRESS_PERCENT = re.compile(r"\b\d{1,3}%[ \t]*(?:complete|completed|done)\b\.?", re.IGNORECASE)

METADATA_LINE = re.compile(
    r"^[ \t]*(?:[-*][ \t]+)?(?:\*\*)?"
    r"(?:Agent|Confidence|Reasoning|Progress|Timestamp|Model|Tokens)"
    r"(?:\*\*)?[ \t]*:(?:\*\*)?[^\n]*$\n?",
    re.MULTILINE | re.IGNORECASE,
)

TRAILING_SPACE = re.compile(r"[ \t]+$", re.MULTILINE)
EXCESS_NEWLINES = re.compile(r"\n{3,}")


# ==========================================================================
# Rules
# ==========================================================================

@dataclass(frozen=True)
class NormalizationRule:
    name: str
    apply: Callable[[str], str]


def _strip_decorations(text: str) -> str:
    text = DECORATIVE_SYMBOLS.sub("", text)
    return DECORATIVE_LINE.sub("", text)


def _strip_streaming_markers(text: str) -> str:
    return STREAMING_MARKERS.sub("", text)


def _strip_banners(text: str) -> str:
    text = BANNER_LINE.sub("", text)
    return META_HEADING.sub("", text)


def _strip_progress(text: str) -> str:
    text = PROGRESS_PHRASE.sub("", text)
    text = PROGRESS_BAR.sub("", text)
    return PROGRESS_PERCENT.sub("", text)


def _strip_metadata_lines(text: str) -> str:
    return METADATA_LINE.sub("", text)


def _collapse_whitespace(text: str) -> str:
    text = TRAILING_SPACE.sub("", text)
    return EXCESS_NEWLINES.sub("\n\n", text)


DEFAULT_RULES: List[NormalizationRule] = [
    NormalizationRule("decorations", _strip_decorations),
    NormalizationRule("streaming_markers", _strip_streaming_markers),
    NormalizationRule("banners", _strip_banners),
    NormalizationRule("progress", _strip_progress),
    NormalizationRule("metadata_lines", _strip_metadata_lines),
    NormalizationRule("whitespace", _collapse_whitespace),
]


# ==========================================================================
# Normalizer
# ==========================================================================

class ContentNormalizer:
    """Applies the rule chain to prose segments, leaving code fences intact."""

    MAX_PASSES = 8

    def __init__(
        self,
        rules: Optional[Sequence[NormalizationRule]] = None,
        min_length: Optional[int] = None,
        guard_length: Optional[int] = None,
    ):
        self.rules = list(rules if rules is not None else DEFAULT_RULES)
        self.min_length = min_length if min_length is not None else settings.MIN_CONTENT_LENGTH
        self.guard_length = guard_length if guard_length is not None else self.min_length * 4

    def normalize(self, text: str) -> str:
        if not text:
            return ""

        cleaned = text
        for _ in range(self.MAX_PASSES):
            next_pass = self._single_pass(cleaned)
            if next_pass == cleaned:
                break
            cleaned = next_pass

        if len(cleaned) < self.min_length and len(text) > self.guard_length:
            return text
        return cleaned

    def _single_pass(self, text: str) -> str:
        pieces: List[str] = []
        position = 0
        for fence in CODE_FENCE.finditer(text):
            pieces.append(self._apply_rules(text[position:fence.start()]))
            pieces.append(fence.group(0))
            position = fence.end()
        pieces.append(self._apply_rules(text[position:]))
        return "".join(pieces).strip()

    def _apply_rules(self, segment: str) -> str:
        for rule in self.rules:
            segment = rule.apply(segment)
        return segment


_default_normalizer: Optional[ContentNormalizer] = None


def normalize(text: str) -> str:
    """Normalize with the default rule chain and configured length floor."""
    global _default_normalizer
    if _default_normalizer is None:
        _default_normalizer = ContentNormalizer()
    return _default_normalizer.normalize(text)
