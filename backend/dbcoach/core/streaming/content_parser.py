"""
DB Coach Streaming - Domain Content Parser
==========================================

Extracts structured artifacts from normalized stage content:
- relational: SQL blocks, CREATE TABLE statements, table names,
  INSERT statements, constraint and index definitions
- document: JSON/Mongo blocks, collection names, sample records
- vector: embedding/python blocks, dimensions, distance metrics,
  index definitions, sample embeddings

When nothing recognisable is found the artifacts report
`has_structure == False` and callers show the normalized text verbatim.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from dbcoach.core.models import DatabaseType

logger = structlog.get_logger()


FENCED_BLOCK = re.compile(r"```([\w+-]*)[^\n]*\n([\s\S]*?)```")


def _fenced_blocks(content: str, languages: tuple) -> List[str]:
    blocks = []
    for match in FENCED_BLOCK.finditer(content):
        language = match.group(1).lower()
        if language in languages:
            blocks.append(match.group(2).strip())
    return blocks


def _unique(items: List[str]) -> List[str]:
    seen = set()
    ordered = []
    for item in items:
        key = item.lower()
        if key not in seen:
            seen.add(key)
            ordered.append(item)
    return ordered


def _balanced_objects(text: str, limit: int) -> List[str]:
    """Top-level `{...}` spans with balanced braces, in order of appearance."""
    objects = []
    depth = 0
    start = None
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start is not None:
                objects.append(text[start:index + 1])
                if len(objects) >= limit:
                    break
    return objects


# ==========================================================================
# Artifacts
# ==========================================================================

@dataclass
class ParsedArtifacts:
    """Artifacts common to every variant."""
    variant: str = "generic"
    code_blocks: List[str] = field(default_factory=list)

    @property
    def has_structure(self) -> bool:
        return any(self.block_counts.values())

    @property
    def block_counts(self) -> Dict[str, int]:
        return {"code_blocks": len(self.code_blocks)}

    def to_dict(self) -> Dict[str, Any]:
        data = {
            key: value for key, value in self.__dict__.items()
            if not key.startswith("_")
        }
        data["has_structure"] = self.has_structure
        data["block_counts"] = self.block_counts
        return data


@dataclass
class RelationalArtifacts(ParsedArtifacts):
    variant: str = "relational"
    create_statements: List[str] = field(default_factory=list)
    table_names: List[str] = field(default_factory=list)
    insert_statements: List[str] = field(default_factory=list)
    index_statements: List[str] = field(default_factory=list)
    constraints: List[str] = field(default_factory=list)

    @property
    def block_counts(self) -> Dict[str, int]:
        return {
            "code_blocks": len(self.code_blocks),
            "tables": len(self.table_names),
            "inserts": len(self.insert_statements),
            "indexes": len(self.index_statements),
            "constraints": len(self.constraints),
        }


@dataclass
class DocumentArtifacts(ParsedArtifacts):
    variant: str = "document"
    collections: List[str] = field(default_factory=list)
    sample_records: List[Any] = field(default_factory=list)

    @property
    def block_counts(self) -> Dict[str, int]:
        return {
            "code_blocks": len(self.code_blocks),
            "collections": len(self.collections),
            "records": len(self.sample_records),
        }


@dataclass
class VectorArtifacts(ParsedArtifacts):
    variant: str = "vector"
    dimensions: List[int] = field(default_factory=list)
    metrics: List[str] = field(default_factory=list)
    index_specs: List[str] = field(default_factory=list)
    sample_embeddings: List[str] = field(default_factory=list)

    @property
    def block_counts(self) -> Dict[str, int]:
        return {
            "code_blocks": len(self.code_blocks),
            "dimensions": len(self.dimensions),
            "metrics": len(self.metrics),
            "indexes": len(self.index_specs),
            "embeddings": len(self.sample_embeddings),
        }


# ==========================================================================
# Parsers
# ==========================================================================

class DomainParser(ABC):
    """One parser per content-domain variant."""

    @abstractmethod
    def parse(self, content: str) -> ParsedArtifacts:
        ...


class GenericParser(DomainParser):
    """Fallback for unknown variants: only fenced blocks are reported."""

    def parse(self, content: str) -> ParsedArtifacts:
        blocks = [m.group(2).strip() for m in FENCED_BLOCK.finditer(content)]
        return ParsedArtifacts(code_blocks=blocks)


class RelationalParser(DomainParser):

    CREATE_TABLE = re.compile(
        r"CREATE\s+TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?[`\"\[]?(\w+)[`\"\]]?[\s\S]*?\)\s*;",
        re.IGNORECASE,
    )
    INSERT = re.compile(r"INSERT\s+INTO\s+[\s\S]*?;", re.IGNORECASE)
    CREATE_INDEX = re.compile(r"CREATE\s+(?:UNIQUE\s+)?INDEX\s+[\s\S]*?;", re.IGNORECASE)
    CONSTRAINT_PATTERNS = [
        re.compile(r"PRIMARY\s+KEY\s*\([^)]*\)", re.IGNORECASE),
        re.compile(r"FOREIGN\s+KEY\s*\([^)]*\)\s*REFERENCES\s+\w+\s*\([^)]*\)", re.IGNORECASE),
        re.compile(r"\w+\s+[\w()]+[^,\n]*\bREFERENCES\s+\w+\s*\(\w+\)", re.IGNORECASE),
        re.compile(r"UNIQUE\s*\([^)]*\)", re.IGNORECASE),
        re.compile(r"CHECK\s*\([^\n]*?\)(?=\s*[,\n])", re.IGNORECASE),
    ]

    def parse(self, content: str) -> RelationalArtifacts:
        blocks = _fenced_blocks(content, ("sql", "postgresql", "mysql", "sqlite", "plpgsql"))
        # Prefer fenced SQL; fall back to scanning the whole text
        source = "\n\n".join(blocks) if blocks else content

        creates = []
        tables = []
        for match in self.CREATE_TABLE.finditer(source):
            creates.append(match.group(0).strip())
            tables.append(match.group(1))

        constraints: List[str] = []
        for pattern in self.CONSTRAINT_PATTERNS:
            constraints.extend(m.group(0).strip() for m in pattern.finditer(source))

        return RelationalArtifacts(
            code_blocks=blocks,
            create_statements=creates,
            table_names=_unique(tables),
            insert_statements=[m.group(0).strip() for m in self.INSERT.finditer(source)],
            index_statements=[m.group(0).strip() for m in self.CREATE_INDEX.finditer(source)],
            constraints=_unique(constraints),
        )


class DocumentParser(DomainParser):

    MAX_RECORDS = 5
    COLLECTION_PATTERNS = [
        re.compile(r"\bdb\.(?!createCollection\b|getCollection\b)(\w+)\s*\."),
        re.compile(r"\b(?:createCollection|getCollection|collection)\s*\(\s*[\"'](\w+)[\"']"),
        re.compile(r"[\"']?collection(?:_name|Name)?[\"']?\s*:\s*[\"'](\w+)[\"']", re.IGNORECASE),
    ]

    def parse(self, content: str) -> DocumentArtifacts:
        blocks = _fenced_blocks(content, ("json", "mongodb", "mongo", "javascript", "js"))
        source = "\n\n".join(blocks) if blocks else content

        collections: List[str] = []
        for pattern in self.COLLECTION_PATTERNS:
            collections.extend(m.group(1) for m in pattern.finditer(content))

        records = []
        for raw in _balanced_objects(source, self.MAX_RECORDS):
            try:
                records.append(json.loads(raw))
            except json.JSONDecodeError:
                records.append(raw)

        return DocumentArtifacts(
            code_blocks=blocks,
            collections=_unique(collections),
            sample_records=records,
        )


class VectorParser(DomainParser):

    MAX_EMBEDDINGS = 3
    DIMENSION = re.compile(r"\bdim(?:ension)?s?[\"']?\s*[:=]\s*(\d+)", re.IGNORECASE)
    METRIC = re.compile(
        r"\b(?:metric|distance)s?[\"']?\s*[:=]\s*[\"']?"
        r"(cosine|euclidean|dotproduct|dot_product|manhattan|l2|ip)\b",
        re.IGNORECASE,
    )
    INDEX_SPEC = re.compile(
        r"\bindex[_\s]*(?:name|type)[\"']?\s*[:=]\s*[\"']?[\w\-]+[\"']?",
        re.IGNORECASE,
    )
    EMBEDDING = re.compile(r"\bembeddings?[\"']?\s*[:=]\s*\[[^\]]*\]", re.IGNORECASE)

    def parse(self, content: str) -> VectorArtifacts:
        blocks = _fenced_blocks(content, ("python", "py", "vector", "embedding", "json", "yaml"))

        dimensions = []
        for match in self.DIMENSION.finditer(content):
            value = int(match.group(1))
            if value not in dimensions:
                dimensions.append(value)

        return VectorArtifacts(
            code_blocks=blocks,
            dimensions=dimensions,
            metrics=_unique([m.group(1).lower() for m in self.METRIC.finditer(content)]),
            index_specs=_unique([m.group(0).strip() for m in self.INDEX_SPEC.finditer(content)]),
            sample_embeddings=[
                m.group(0).strip() for m in self.EMBEDDING.finditer(content)
            ][:self.MAX_EMBEDDINGS],
        )


# ==========================================================================
# Dispatch
# ==========================================================================

PARSERS: Dict[DatabaseType, DomainParser] = {
    DatabaseType.SQL: RelationalParser(),
    DatabaseType.NOSQL: DocumentParser(),
    DatabaseType.VECTORDB: VectorParser(),
}

_generic_parser = GenericParser()


def get_parser(database_type: Optional[DatabaseType]) -> DomainParser:
    return PARSERS.get(database_type, _generic_parser)


def parse_content(content: str, database_type: Optional[DatabaseType]) -> ParsedArtifacts:
    """Parse clean content with the parser matching the database type."""
    parser = get_parser(database_type)
    artifacts = parser.parse(content or "")
    logger.debug(
        "content_parsed",
        variant=artifacts.variant,
        has_structure=artifacts.has_structure,
        **artifacts.block_counts,
    )
    return artifacts
