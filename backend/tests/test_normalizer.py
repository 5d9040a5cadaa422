"""
Content Normalizer Tests
========================

Tests for stripping generation meta-commentary from stage content.
"""

import pytest

from conftest import SAMPLE_CONTENT
from dbcoach.core.streaming.normalizer import (
    ContentNormalizer,
    NormalizationRule,
    normalize,
)


# ==========================================================================
# Fixtures
# ==========================================================================

@pytest.fixture
def normalizer() -> ContentNormalizer:
    return ContentNormalizer()


SAMPLES = [
    SAMPLE_CONTENT,
    "=== Requirements ===\n\n\n\nUsers place orders.   \n\n\n\nOrders have items.",
    "[PROGRESS] Analyzing domain...\n## Entities\n- users\n- orders\n[#####     ] 50%",
    "**Agent:** Schema Architect\n**Confidence:** 0.9\n\nThe schema has two tables.",
    "\u2728 Design ready \U0001F680\n\n```sql\n-- === keep ===\nSELECT 1;\n```\n\n75% complete.",
    "",
    "plain text that needs no cleaning at all",
]


# ==========================================================================
# Stripping Tests
# ==========================================================================

class TestStripping:
    """Each category of meta-commentary is removed."""

    def test_removes_banners_and_markers(self, normalizer):
        result = normalizer.normalize(SAMPLE_CONTENT)

        assert "=== Schema Design ===" not in result
        assert "[STREAMING]" not in result
        assert "Here is the schema:" not in result
        assert "Confidence:" not in result
        assert result.startswith("```sql")
        assert "Authors own posts" in result

    def test_removes_progress_chatter(self, normalizer):
        text = "Generating schema...\nTables are below.\n[#####     ] 50%\nDone: 75% complete."
        result = normalizer.normalize(text)

        assert "Generating" not in result
        assert "50%" not in result
        assert "75%" not in result
        assert "Tables are below." in result

    def test_removes_metadata_lines(self, normalizer):
        text = "Agent: Schema Architect\n- **Reasoning:** split users\nTimestamp: 12:00\nKeep this line."
        assert normalizer.normalize(text) == "Keep this line."

    def test_removes_decorative_symbols(self, normalizer):
        text = "\U0001F680 Launch plan\n-----\n\u2705 Tables created"
        result = normalizer.normalize(text)

        assert result == "Launch plan\n\nTables created"
        assert "\U0001F680" not in result

    def test_collapses_blank_lines_and_trailing_space(self, normalizer):
        assert normalizer.normalize("a   \n\n\n\n\nb") == "a\n\nb"

    def test_empty_input(self, normalizer):
        assert normalizer.normalize("") == ""


# ==========================================================================
# Code Fence Tests
# ==========================================================================

class TestCodeFences:
    """Fenced code is never altered."""

    def test_fence_contents_untouched(self, normalizer):
        fence = (
            "```sql\n"
            "-- === not a banner ===\n"
            "-- [STREAMING] literal marker\n"
            "-- Progress: 50%\n"
            "SELECT 1;\n\n\n\n"
            "SELECT 2;   \n"
            "```"
        )
        text = f"=== Banner ===\nIntro line.\n\n{fence}\n\nConfidence: 0.5\nOutro line."
        result = normalizer.normalize(text)

        assert fence in result
        assert "=== Banner ===" not in result
        assert "Confidence: 0.5" not in result

    def test_unterminated_fence_is_preserved(self, normalizer):
        text = "Schema follows.\n\n```sql\nCREATE TABLE t (\n    id INT\n);\n-- Agent: keep"
        result = normalizer.normalize(text)

        assert "-- Agent: keep" in result
        assert result.endswith("-- Agent: keep")


# ==========================================================================
# Idempotence and Guard Tests
# ==========================================================================

class TestIdempotence:

    @pytest.mark.parametrize("sample", SAMPLES)
    def test_normalize_twice_equals_once(self, normalizer, sample):
        once = normalizer.normalize(sample)
        assert normalizer.normalize(once) == once

    def test_module_level_normalize_matches_default(self, normalizer):
        assert normalize(SAMPLE_CONTENT) == normalizer.normalize(SAMPLE_CONTENT)


class TestOverTrimGuard:

    def test_returns_input_when_cleaning_destroys_long_document(self, normalizer):
        text = "Agent: Schema Architect\nConfidence: 0.9\n" * 10
        assert len(text.strip()) > normalizer.guard_length

        assert normalizer.normalize(text) == text

    def test_whitespace_padding_counts_toward_guard(self):
        normalizer = ContentNormalizer(min_length=50)
        text = " " * 300 + "[STREAMING] ok"

        result = normalizer.normalize(text)

        assert len(result) >= 50
        assert result == text
        assert normalizer.normalize(result) == result

    def test_short_input_may_clean_to_empty(self, normalizer):
        assert normalizer.normalize("Progress: 10%") == ""

    def test_custom_rules(self):
        shout = NormalizationRule("upper", lambda s: s.upper())
        normalizer = ContentNormalizer(rules=[shout], min_length=1)

        assert normalizer.normalize("select 1") == "SELECT 1"
