"""
DB Coach Streaming - Prompt Catalogue
=====================================

Paradigm preambles per database type and per-stage instructions used to
build the request handed to the generation backend.
"""

from dataclasses import dataclass
from typing import Dict, Tuple

from dbcoach.core.models import DatabaseType
from dbcoach.core.streaming.state import TaskState


@dataclass(frozen=True)
class Paradigm:
    philosophy: str
    principles: Tuple[str, ...]
    patterns: Tuple[str, ...]


PARADIGMS: Dict[DatabaseType, Paradigm] = {
    DatabaseType.SQL: Paradigm(
        philosophy="ACID-compliant relational data management with structured schemas and declarative querying",
        principles=(
            "ACID transaction guarantees",
            "Normalization and data integrity",
            "Schema-first design",
            "Strong consistency",
        ),
        patterns=(
            "Normalized relational schema",
            "Read replicas",
            "Query optimization with indexes",
        ),
    ),
    DatabaseType.NOSQL: Paradigm(
        philosophy="Flexible, horizontally scalable data management with eventual consistency and schema-on-read",
        principles=(
            "Schema flexibility",
            "Horizontal scaling",
            "Denormalization for read performance",
            "Application-level joins",
        ),
        patterns=(
            "Document-based storage",
            "Embedding versus referencing",
            "Shard key selection",
        ),
    ),
    DatabaseType.VECTORDB: Paradigm(
        philosophy="AI-native semantic similarity search with high-dimensional vector embeddings and approximate algorithms",
        principles=(
            "Semantic similarity search",
            "High-dimensional vector storage",
            "Approximate nearest neighbour indexes",
            "Metadata-enhanced vectors",
        ),
        patterns=(
            "HNSW and IVF indexes",
            "Hybrid metadata filtering",
            "Embedding pipeline integration",
        ),
    ),
}


STAGE_INSTRUCTIONS: Dict[str, str] = {
    "requirements_analysis": (
        "Analyze the business domain, extract functional and non-functional "
        "requirements, list the core entities and classify the overall complexity."
    ),
    "schema_design": (
        "Design the complete schema: entities, attributes with types, "
        "relationships and the structural optimizations they need."
    ),
    "implementation_package": (
        "Produce the implementation package: creation scripts, indexes, "
        "realistic sample data and the main access patterns."
    ),
    "quality_assurance": (
        "Review the design: validate integrity, assess performance hot spots "
        "and audit security, then list concrete recommendations."
    ),
}


def paradigm_preamble(database_type: DatabaseType) -> str:
    paradigm = PARADIGMS[database_type]
    principles = "\n".join(f"- {p}" for p in paradigm.principles)
    patterns = "\n".join(f"- {p}" for p in paradigm.patterns)
    return (
        f"You are DB.Coach, an expert {database_type.label} database architect.\n"
        f"Philosophy: {paradigm.philosophy}.\n\n"
        f"Design principles:\n{principles}\n\n"
        f"Architectural patterns:\n{patterns}\n"
    )


def build_stage_request(task: TaskState, request_text: str, database_type: DatabaseType) -> str:
    """Compose the request text for one stage."""
    instruction = STAGE_INSTRUCTIONS.get(
        task.id,
        f"Produce the {task.title.lower()} for this database design.",
    )
    return (
        f"Stage: {task.title} (performed by the {task.agent})\n"
        f"Target: {database_type.label} database\n\n"
        f"{instruction}\n\n"
        "Answer in Markdown. Put every script or document example in a fenced "
        "code block tagged with its language. Do not narrate your progress.\n\n"
        f"User request:\n{request_text.strip()}"
    )
