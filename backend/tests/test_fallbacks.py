"""
Fallback Content Tests
======================

Tests for domain classification, technology detection, tier-2 templates,
tier-3 minimal content, stage prompts and conversation titles.
"""

import pytest

from dbcoach.core.models import DatabaseType
from dbcoach.core.streaming.content_parser import parse_content
from dbcoach.core.streaming.fallbacks import (
    GENERIC_PROFILE,
    FallbackContext,
    classify_domain,
    detect_technology,
    minimal_content,
    template_content,
)
from dbcoach.core.streaming.persistence import ConversationTitleGenerator
from dbcoach.core.streaming.prompts import build_stage_request, paradigm_preamble
from dbcoach.core.streaming.state import DEFAULT_STAGES, TaskState


STAGE_KEYS = [stage.key for stage in DEFAULT_STAGES]


# ==========================================================================
# Classification Tests
# ==========================================================================

class TestDomainClassification:

    @pytest.mark.parametrize("request_text,expected", [
        ("An online shop with products, carts and orders", "E-commerce Platform"),
        ("A blog where authors write posts and readers comment", "Blog Management"),
        ("Clinic appointments between patients and doctors", "Healthcare System"),
        ("Track books borrowed by library members", "Library System"),
    ])
    def test_known_domains(self, request_text, expected):
        assert classify_domain(request_text).name == expected

    def test_unknown_request_is_generic(self):
        assert classify_domain("Something about widgets") is GENERIC_PROFILE

    def test_most_keywords_wins(self):
        # one e-commerce keyword against three blog keywords
        profile = classify_domain("A blog with posts, comments and a small store")
        assert profile.name == "Blog Management"


class TestTechnologyDetection:

    def test_explicit_technology(self):
        assert detect_technology("Use MySQL please", DatabaseType.SQL) == "MySQL"
        assert detect_technology("Built on DynamoDB", DatabaseType.NOSQL) == "DynamoDB"
        assert detect_technology("qdrant cluster", DatabaseType.VECTORDB) == "Qdrant"

    def test_defaults_per_type(self):
        assert detect_technology("a blog", DatabaseType.SQL) == "PostgreSQL"
        assert detect_technology("a blog", DatabaseType.NOSQL) == "MongoDB"
        assert detect_technology("a blog", DatabaseType.VECTORDB) == "Pinecone"


# ==========================================================================
# Template Tests
# ==========================================================================

class TestTemplates:

    @pytest.mark.parametrize("database_type", list(DatabaseType))
    @pytest.mark.parametrize("stage_key", STAGE_KEYS)
    def test_every_stage_has_long_enough_template(self, stage_key, database_type):
        context = FallbackContext.build("An online shop with products", database_type)
        content = template_content(stage_key, context)

        assert len(content.strip()) >= 50

    def test_sql_schema_template_parses(self):
        context = FallbackContext.build("An online shop with products", DatabaseType.SQL)
        artifacts = parse_content(template_content("schema_design", context), DatabaseType.SQL)

        assert artifacts.table_names == ["customers", "products", "orders", "order_items"]
        assert any("REFERENCES customers(id)" in c for c in artifacts.constraints)

    def test_document_implementation_template_parses(self):
        context = FallbackContext.build("A blog with posts", DatabaseType.NOSQL)
        artifacts = parse_content(template_content("implementation_package", context), DatabaseType.NOSQL)

        assert "authors" in artifacts.collections
        assert "posts" in artifacts.collections

    def test_vector_schema_template_parses(self):
        context = FallbackContext.build("Semantic search over products", DatabaseType.VECTORDB)
        artifacts = parse_content(template_content("schema_design", context), DatabaseType.VECTORDB)

        assert artifacts.dimensions == [1536]
        assert artifacts.metrics == ["cosine"]

    def test_requirements_mention_request_and_technology(self):
        context = FallbackContext.build("A hotel booking site on MySQL", DatabaseType.SQL)
        content = template_content("requirements_analysis", context)

        assert "Hotel Booking" in content
        assert "MySQL" in content
        assert "A hotel booking site on MySQL" in content

    def test_unknown_stage_has_no_template(self):
        context = FallbackContext.build("A blog", DatabaseType.SQL)
        assert template_content("deployment_plan", context) == ""

    def test_minimal_content(self):
        content = minimal_content("Schema Design", DatabaseType.VECTORDB)

        assert content.startswith("# Schema Design")
        assert "VectorDB" in content
        assert len(content) >= 50


# ==========================================================================
# Prompt Tests
# ==========================================================================

class TestPrompts:

    def test_stage_request_includes_context(self):
        task = TaskState.from_stage(DEFAULT_STAGES[1], 1)
        request = build_stage_request(task, "  A blog with comments  ", DatabaseType.NOSQL)

        assert "Stage: Schema Design" in request
        assert "Target: NoSQL database" in request
        assert request.endswith("A blog with comments")

    @pytest.mark.parametrize("database_type", list(DatabaseType))
    def test_paradigm_preamble(self, database_type):
        assert database_type.label in paradigm_preamble(database_type)


# ==========================================================================
# Title Tests
# ==========================================================================

class TestConversationTitles:

    def test_domain_title(self):
        title = ConversationTitleGenerator.generate("A blog with comments", DatabaseType.SQL)
        assert title == "Blog Management (SQL)"

    def test_keyword_title(self):
        title = ConversationTitleGenerator.generate("Track my plants watering", DatabaseType.NOSQL)
        assert title == "Track Plants NoSQL Database"

    def test_fallback_title(self):
        title = ConversationTitleGenerator.generate("a db", DatabaseType.VECTORDB)
        assert title == "VectorDB Database Design"
