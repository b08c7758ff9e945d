import uuid
from datetime import datetime
from typing import Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from ticket_audit.schemas.rules import Severity, SourceLocation
from ticket_audit.schemas.ticket import AgentActions, TicketFacts

FindingType = Literal["violation", "potential_violation", "improvement", "note", "positive"]
Speaker = Literal["user", "agent", "system"]
OverallStatus = Literal["pass", "fail", "needs_review"]
RiskLevel = Literal["low", "medium", "high", "critical"]
QAStatus = Literal["pending", "in_review", "approved", "rejected", "imported"]

FINDING_TYPES = ("violation", "potential_violation", "improvement", "note", "positive")
SEVERITIES = ("critical", "high", "medium", "low")

SYSTEM_RULE_ID = "SYSTEM"


class Evidence(BaseModel):
    message_id: Optional[str] = None
    speaker: Speaker = "user"
    excerpt: str = ""
    timestamp: Optional[datetime] = None


class Finding(BaseModel):
    type: FindingType
    severity: Severity
    rule_id: Optional[str] = None
    rule_title: Optional[str] = None
    rule_text_excerpt: Optional[str] = None
    rule_location: Optional[SourceLocation] = None
    ticket_evidence: List[Evidence] = Field(default_factory=list)
    explanation: str
    recommended_fix: Optional[str] = None
    verification_needed: bool = False
    what_to_verify: Optional[str] = None
    why_uncertain: Optional[str] = None
    guardrail_id: Optional[str] = None
    guardrail_name: Optional[str] = None
    qa_reviewed: bool = False
    qa_override: Optional[Literal["confirmed", "dismissed", "modified"]] = None
    qa_notes: Optional[str] = None


class FindingsSummary(BaseModel):
    total: int = 0
    violations: int = 0
    potential_violations: int = 0
    improvements: int = 0
    notes: int = 0
    positives: int = 0
    critical_count: int = 0
    high_count: int = 0
    medium_count: int = 0
    low_count: int = 0

    @classmethod
    def from_findings(cls, findings: Iterable[Finding]) -> "FindingsSummary":
        findings = list(findings)

        def count_type(kind: str) -> int:
            return sum(1 for f in findings if f.type == kind)

        def count_severity(level: str) -> int:
            return sum(1 for f in findings if f.severity == level)

        return cls(
            total=len(findings),
            violations=count_type("violation"),
            potential_violations=count_type("potential_violation"),
            improvements=count_type("improvement"),
            notes=count_type("note"),
            positives=count_type("positive"),
            critical_count=count_severity("critical"),
            high_count=count_severity("high"),
            medium_count=count_severity("medium"),
            low_count=count_severity("low"),
        )


class Classification(BaseModel):
    category: str = "General Support"
    subcategory: Optional[str] = None
    risk_level: RiskLevel = "medium"
    key_entities: List[str] = Field(default_factory=list)
    mandatory_tags: List[str] = Field(default_factory=list)


class RetrievedRule(BaseModel):
    rule_id: str
    title: str = "Unknown"
    similarity: float
    source: str


class GuardrailRecord(BaseModel):
    type: str
    rule_triggered: str
    description: str


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    cached_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0


class TicketEvaluation(BaseModel):
    """Persisted outcome of one evaluation attempt."""

    model_config = ConfigDict(protected_namespaces=())

    evaluation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    ticket_id: str
    conversation_id: Optional[str] = None
    session_id: Optional[str] = None
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None

    category: Optional[str] = None
    subcategory: Optional[str] = None
    risk_level: RiskLevel = "medium"

    overall_status: OverallStatus
    confidence: float = Field(default=0.5, ge=0, le=1)
    findings: List[Finding] = Field(default_factory=list)

    ticket_facts: TicketFacts = Field(default_factory=TicketFacts)
    agent_actions: AgentActions = Field(default_factory=AgentActions)
    retrieved_rules: List[RetrievedRule] = Field(default_factory=list)
    guardrail_findings: List[GuardrailRecord] = Field(default_factory=list)

    model_used: str
    token_usage: TokenUsage = Field(default_factory=TokenUsage)

    evaluation_started_at: Optional[datetime] = None
    evaluation_completed_at: Optional[datetime] = None
    evaluation_duration_ms: Optional[int] = None

    qa_status: QAStatus = "pending"
    qa_notes: Optional[str] = None
    created_by: Optional[str] = None

    @computed_field
    @property
    def findings_summary(self) -> FindingsSummary:
        return FindingsSummary.from_findings(self.findings)


class ModelEvidence(BaseModel):
    """Evidence item as returned by the model, before speaker normalization."""

    message_id: Optional[str] = None
    speaker: Optional[str] = None
    excerpt: str = ""


class ModelFinding(BaseModel):
    type: Optional[str] = None
    severity: Optional[str] = None
    rule_id: Optional[str] = None
    rule_title: Optional[str] = None
    rule_text_excerpt: Optional[str] = None
    explanation: str = ""
    recommended_fix: Optional[str] = None
    ticket_evidence: List[ModelEvidence] = Field(default_factory=list)
    verification_needed: bool = False
    what_to_verify: Optional[str] = None
    why_uncertain: Optional[str] = None


class ModelEvaluationOutput(BaseModel):
    """Shape the evaluator requires from the model's JSON answer."""

    overall_status: Optional[OverallStatus] = None
    confidence: Optional[float] = Field(default=None, ge=0, le=1)
    category: Optional[str] = None
    subcategory: Optional[str] = None
    findings: List[ModelFinding] = Field(default_factory=list)
