from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field

Severity = Literal["critical", "high", "medium", "low"]

SEVERITY_RANK = {"critical": 4, "high": 3, "medium": 2, "low": 1}


class SourceLocation(BaseModel):
    source_name: Optional[str] = None
    page: Optional[int] = None
    section: Optional[str] = None
    paragraph_id: Optional[str] = None
    version_hash: Optional[str] = None


class RuleStep(BaseModel):
    step_number: int
    action: str
    note: Optional[str] = None


class ConditionClause(BaseModel):
    field: str
    operator: Literal[
        "equals", "not_equals", "contains", "not_contains", "in", "not_in", "exists", "not_exists"
    ] = "equals"
    value: Any = None


class RuleCondition(BaseModel):
    if_: List[ConditionClause] = Field(default_factory=list, alias="if")
    then: str
    else_optional: Optional[str] = None
    certainty: Literal["hard", "soft"] = "hard"

    model_config = {"populate_by_name": True}


class RuleException(BaseModel):
    description: str
    when: Optional[str] = None


class RuleDocument(BaseModel):
    """Authoritative compliance rule, immutable during evaluation."""

    rule_id: str
    category_id: Optional[str] = None
    category_name: str = ""
    subcategory: str = ""
    title: str
    intent: str = ""
    rule_text: str
    steps: List[RuleStep] = Field(default_factory=list)
    allowed_actions: List[str] = Field(default_factory=list)
    disallowed_actions: List[str] = Field(default_factory=list)
    conditions: List[RuleCondition] = Field(default_factory=list)
    exceptions: List[RuleException] = Field(default_factory=list)
    examples_good: List[str] = Field(default_factory=list)
    examples_bad: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    severity_default: Severity = "medium"
    evidence_requirements: str = ""
    source_location: Optional[SourceLocation] = None
    is_active: bool = True


class ChunkMetadata(BaseModel):
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    subcategory: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    severity: Optional[Severity] = None
    source_location: Optional[SourceLocation] = None


class RuleChunk(BaseModel):
    """Retrieval slice of a rule carrying its embedding."""

    chunk_id: str
    rule_id: str
    embedding_input: str
    embedding: List[float]
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    token_count: int = 0
    is_active: bool = True


class ScoredChunk(BaseModel):
    """A chunk returned from the corpus store, with retrieval provenance."""

    chunk_id: str
    rule_id: str
    embedding_input: str
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    token_count: int = 0
    similarity: float = 0.0
    source: Literal["semantic", "mandatory_tag", "category"] = "semantic"
    rule: Optional[RuleDocument] = None
