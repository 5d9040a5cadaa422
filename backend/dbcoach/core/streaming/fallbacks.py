"""
DB Coach Streaming - Fallback Templates
=======================================

Static content used when the generation backend is unavailable:

- Tier 2: role-specific templates per stage and database type, flavoured
  with a keyword-classified domain (entities) and a detected technology.
- Tier 3: a generic, guaranteed non-empty document.
"""

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

from dbcoach.core.models import DatabaseType


# ==========================================================================
# Domain Classification
# ==========================================================================

@dataclass(frozen=True)
class DomainProfile:
    name: str
    keywords: Tuple[str, ...]
    entities: Tuple[str, ...]  # first entity owns the others

    @property
    def owner(self) -> str:
        return self.entities[0]


DOMAIN_PROFILES: Tuple[DomainProfile, ...] = (
    DomainProfile(
        "E-commerce Platform",
        ("shop", "store", "product", "cart", "order", "payment", "ecommerce", "marketplace"),
        ("customers", "products", "orders", "order_items"),
    ),
    DomainProfile(
        "Blog Management",
        ("blog", "post", "article", "author", "comment", "category", "cms"),
        ("authors", "posts", "comments", "categories"),
    ),
    DomainProfile(
        "Social Network",
        ("social", "like", "follow", "feed", "friend", "message"),
        ("users", "posts", "follows", "messages"),
    ),
    DomainProfile(
        "CRM System",
        ("customer", "lead", "contact", "sales", "deal", "client", "crm", "pipeline"),
        ("accounts", "contacts", "leads", "deals"),
    ),
    DomainProfile(
        "Education Platform",
        ("student", "course", "lesson", "grade", "assignment", "teacher", "learning", "education"),
        ("students", "courses", "enrollments", "assignments"),
    ),
    DomainProfile(
        "Healthcare System",
        ("patient", "doctor", "appointment", "medical", "health", "treatment", "clinic", "hospital"),
        ("patients", "doctors", "appointments", "treatments"),
    ),
    DomainProfile(
        "Financial System",
        ("transaction", "account", "balance", "bank", "finance", "invoice", "billing"),
        ("account_holders", "accounts", "transactions", "invoices"),
    ),
    DomainProfile(
        "Inventory Management",
        ("inventory", "warehouse", "stock", "supplier", "procurement", "asset"),
        ("warehouses", "suppliers", "stock_items", "stock_movements"),
    ),
    DomainProfile(
        "Project Management",
        ("project", "task", "team", "milestone", "deadline", "collaboration"),
        ("teams", "projects", "tasks", "milestones"),
    ),
    DomainProfile(
        "Restaurant System",
        ("restaurant", "menu", "food", "recipe", "kitchen", "dining"),
        ("restaurants", "menu_items", "orders", "reservations"),
    ),
    DomainProfile(
        "Library System",
        ("library", "book", "catalog", "borrowing", "member"),
        ("members", "books", "loans", "authors"),
    ),
    DomainProfile(
        "Hotel Booking",
        ("hotel", "booking", "reservation", "room", "guest", "accommodation"),
        ("guests", "rooms", "bookings", "payments"),
    ),
    DomainProfile(
        "Event Management",
        ("event", "ticket", "venue", "attendee", "registration", "schedule"),
        ("organizers", "events", "tickets", "attendees"),
    ),
)

GENERIC_PROFILE = DomainProfile("General Application", (), ("users", "items", "activity_log"))


def _words(text: str) -> List[str]:
    return re.sub(r"[^\w\s]", " ", text.lower()).split()


def classify_domain(request_text: str) -> DomainProfile:
    """Pick the domain whose keywords appear most often in the request."""
    words = _words(request_text)
    best, best_score = GENERIC_PROFILE, 0
    for profile in DOMAIN_PROFILES:
        # Prefix match so "products" hits "product"
        score = sum(1 for w in words for k in profile.keywords if w.startswith(k))
        if score > best_score:
            best, best_score = profile, score
    return best


# ==========================================================================
# Technology Detection
# ==========================================================================

TECHNOLOGIES: Dict[DatabaseType, Tuple[Tuple[Tuple[str, ...], str], ...]] = {
    DatabaseType.SQL: (
        (("postgres", "postgresql", "psql"), "PostgreSQL"),
        (("mysql", "mariadb"), "MySQL"),
        (("sqlite",), "SQLite"),
        (("sql server", "mssql", "t-sql"), "SQL Server"),
    ),
    DatabaseType.NOSQL: (
        (("mongo", "mongodb"), "MongoDB"),
        (("firestore", "firebase"), "Firestore"),
        (("cosmos", "cosmosdb"), "CosmosDB"),
        (("dynamo", "dynamodb"), "DynamoDB"),
    ),
    DatabaseType.VECTORDB: (
        (("pinecone",), "Pinecone"),
        (("weaviate",), "Weaviate"),
        (("qdrant",), "Qdrant"),
        (("chroma", "chromadb"), "Chroma"),
    ),
}


def detect_technology(request_text: str, database_type: DatabaseType) -> str:
    text = request_text.lower()
    candidates = TECHNOLOGIES[database_type]
    for needles, name in candidates:
        if any(n in text for n in needles):
            return name
    return candidates[0][1]


@dataclass(frozen=True)
class FallbackContext:
    request_text: str
    database_type: DatabaseType
    domain: DomainProfile
    technology: str

    @classmethod
    def build(cls, request_text: str, database_type: DatabaseType) -> "FallbackContext":
        return cls(
            request_text=request_text,
            database_type=database_type,
            domain=classify_domain(request_text),
            technology=detect_technology(request_text, database_type),
        )


# ==========================================================================
# Tier 2: Role-Specific Templates
# ==========================================================================

def _singular(name: str) -> str:
    if name.endswith("ies"):
        return name[:-3] + "y"
    if name.endswith("s") and not name.endswith("ss"):
        return name[:-1]
    return name


def _requirements(ctx: FallbackContext) -> str:
    entities = "\n".join(f"- **{e.replace('_', ' ').title()}**" for e in ctx.domain.entities)
    return (
        f"# Requirements Analysis: {ctx.domain.name}\n\n"
        f"**Request**: {ctx.request_text.strip()}\n\n"
        f"**Target platform**: {ctx.technology} ({ctx.database_type.label})\n\n"
        f"## Core Entities\n{entities}\n\n"
        "## Functional Requirements\n"
        f"- Create, read, update and archive {ctx.domain.entities[1].replace('_', ' ')}\n"
        f"- Every record is owned by a {_singular(ctx.domain.owner).replace('_', ' ')}\n"
        "- Full audit trail through creation and update timestamps\n\n"
        "## Non-Functional Requirements\n"
        "- Predictable read latency on the main listing queries\n"
        "- Horizontal growth of the largest entity without redesign\n"
        "- Least-privilege access for application credentials\n\n"
        "## Complexity\n"
        f"Moderate: {len(ctx.domain.entities)} core entities with one ownership hierarchy.\n"
    )


def _sql_schema(ctx: FallbackContext) -> str:
    owner = ctx.domain.owner
    fk = f"{_singular(owner)}_id"
    tables = [
        f"CREATE TABLE {owner} (\n"
        "    id SERIAL PRIMARY KEY,\n"
        "    name VARCHAR(255) NOT NULL,\n"
        "    email VARCHAR(255) UNIQUE,\n"
        "    created_at TIMESTAMP NOT NULL DEFAULT NOW(),\n"
        "    updated_at TIMESTAMP NOT NULL DEFAULT NOW()\n"
        ");"
    ]
    for entity in ctx.domain.entities[1:]:
        tables.append(
            f"CREATE TABLE {entity} (\n"
            "    id SERIAL PRIMARY KEY,\n"
            f"    {fk} INTEGER NOT NULL REFERENCES {owner}(id),\n"
            "    title VARCHAR(255) NOT NULL,\n"
            "    details TEXT,\n"
            "    status VARCHAR(32) NOT NULL DEFAULT 'active',\n"
            "    created_at TIMESTAMP NOT NULL DEFAULT NOW()\n"
            ");"
        )
    return (
        f"# Schema Design: {ctx.domain.name}\n\n"
        f"Normalized {ctx.technology} schema with `{owner}` as the owning entity.\n\n"
        "```sql\n" + "\n\n".join(tables) + "\n```\n\n"
        "## Relationships\n"
        + "\n".join(f"- `{e}.{fk}` references `{owner}.id`" for e in ctx.domain.entities[1:])
        + "\n"
    )


def _document_schema(ctx: FallbackContext) -> str:
    owner = ctx.domain.owner
    child = ctx.domain.entities[1]
    return (
        f"# Schema Design: {ctx.domain.name}\n\n"
        f"Document model for {ctx.technology}. `{owner}` embeds a summary of recent "
        f"`{child}`; full documents are referenced by id.\n\n"
        "```json\n"
        "{\n"
        f'  "_id": "{_singular(owner)}_001",\n'
        '  "name": "Example",\n'
        f'  "recent_{child}": [\n'
        f'    {{"{_singular(child)}_id": "{_singular(child)}_001", "title": "First item"}}\n'
        "  ],\n"
        '  "created_at": "2024-01-01T00:00:00Z"\n'
        "}\n"
        "```\n\n"
        "## Collections\n"
        + "\n".join(f"- `{e}`" for e in ctx.domain.entities)
        + "\n"
    )


def _vector_schema(ctx: FallbackContext) -> str:
    entity = ctx.domain.entities[1]
    return (
        f"# Schema Design: {ctx.domain.name}\n\n"
        f"{ctx.technology} collection storing embeddings of `{entity}` with filterable metadata.\n\n"
        "```python\n"
        "collection_config = {\n"
        f'    "name": "{entity}_embeddings",\n'
        '    "dimension": 1536,\n'
        '    "metric": "cosine",\n'
        '    "index_type": "HNSW",\n'
        "}\n\n"
        "metadata_schema = {\n"
        f'    "{_singular(ctx.domain.owner)}_id": "string",\n'
        '    "title": "string",\n'
        '    "created_at": "datetime",\n'
        "}\n"
        "```\n"
    )


def _sql_implementation(ctx: FallbackContext) -> str:
    owner = ctx.domain.owner
    child = ctx.domain.entities[1]
    fk = f"{_singular(owner)}_id"
    return (
        f"# Implementation Package: {ctx.technology}\n\n"
        "## Indexes\n"
        "```sql\n"
        f"CREATE INDEX idx_{child}_{fk} ON {child}({fk});\n"
        f"CREATE INDEX idx_{child}_created_at ON {child}(created_at);\n"
        "```\n\n"
        "## Sample Data\n"
        "```sql\n"
        f"INSERT INTO {owner} (name, email) VALUES ('Alex Example', 'alex@example.com');\n"
        f"INSERT INTO {child} ({fk}, title, details) VALUES (1, 'First record', 'Seed data');\n"
        "```\n\n"
        "## Access Patterns\n"
        f"- List {child.replace('_', ' ')} for one {_singular(owner).replace('_', ' ')} ordered by `created_at`\n"
        f"- Look up a {_singular(owner).replace('_', ' ')} by email\n"
    )


def _document_implementation(ctx: FallbackContext) -> str:
    owner = ctx.domain.owner
    child = ctx.domain.entities[1]
    return (
        f"# Implementation Package: {ctx.technology}\n\n"
        "```mongodb\n"
        f'db.{owner}.createIndex({{"email": 1}}, {{"unique": true}})\n'
        f'db.{child}.createIndex({{"{_singular(owner)}_id": 1, "created_at": -1}})\n'
        f'db.{child}.insertOne({{"{_singular(owner)}_id": "{_singular(owner)}_001", "title": "First record"}})\n'
        "```\n\n"
        "## Access Patterns\n"
        f"- Read a {_singular(owner).replace('_', ' ')} with embedded recent items in one query\n"
        f"- Page through {child.replace('_', ' ')} by `created_at`\n"
    )


def _vector_implementation(ctx: FallbackContext) -> str:
    entity = ctx.domain.entities[1]
    return (
        f"# Implementation Package: {ctx.technology}\n\n"
        "```python\n"
        "records = [\n"
        "    {\n"
        f'        "id": "{_singular(entity)}_001",\n'
        '        "embedding": [0.12, -0.04, 0.33, 0.08],\n'
        '        "metadata": {"title": "First record"},\n'
        "    },\n"
        "]\n\n"
        f"index.upsert(namespace=\"{entity}\", records=records)\n"
        "results = index.query(vector=query_embedding, top_k=10, filter={\"title\": {\"$exists\": True}})\n"
        "```\n"
    )


def _quality_review(ctx: FallbackContext) -> str:
    checks = {
        DatabaseType.SQL: (
            "Every foreign key column is indexed",
            "NOT NULL and UNIQUE constraints match the requirements",
            "Application role has no DDL privileges",
        ),
        DatabaseType.NOSQL: (
            "Embedded arrays are bounded in size",
            "Indexes cover the two main access patterns",
            "Document validation rules reject missing owner ids",
        ),
        DatabaseType.VECTORDB: (
            "Embedding dimension matches the model output",
            "Distance metric matches how the embeddings were trained",
            "Metadata filters do not leak across tenants",
        ),
    }[ctx.database_type]
    return (
        f"# Quality Assurance: {ctx.domain.name}\n\n"
        "## Validation\n"
        + "\n".join(f"- [x] {c}" for c in checks)
        + "\n\n## Recommendations\n"
        f"- Load-test the `{ctx.domain.entities[1]}` listing query with production-sized data\n"
        "- Add monitoring on slow queries before launch\n"
    )


STAGE_TEMPLATES: Dict[str, Dict[DatabaseType, Callable[[FallbackContext], str]]] = {
    "requirements_analysis": {t: _requirements for t in DatabaseType},
    "schema_design": {
        DatabaseType.SQL: _sql_schema,
        DatabaseType.NOSQL: _document_schema,
        DatabaseType.VECTORDB: _vector_schema,
    },
    "implementation_package": {
        DatabaseType.SQL: _sql_implementation,
        DatabaseType.NOSQL: _document_implementation,
        DatabaseType.VECTORDB: _vector_implementation,
    },
    "quality_assurance": {t: _quality_review for t in DatabaseType},
}


def template_content(stage_key: str, context: FallbackContext) -> str:
    """Tier-2 content for a stage; empty when the stage has no template."""
    builders = STAGE_TEMPLATES.get(stage_key)
    if not builders:
        return ""
    return builders[context.database_type](context)


# ==========================================================================
# Tier 3: Minimal Content
# ==========================================================================

def minimal_content(stage_title: str, database_type: DatabaseType) -> str:
    """Generic content that is always long enough to display."""
    return (
        f"# {stage_title}\n\n"
        f"A {database_type.label} design outline could not be generated for this stage, "
        "so a baseline is shown instead.\n\n"
        "- Identify the core entities and their owners\n"
        "- Define identifiers, required attributes and timestamps\n"
        "- Index the fields used by the most frequent queries\n"
        "- Review access control before storing production data\n"
    )
