from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ticket_audit.schemas.evaluation import TicketEvaluation
from ticket_audit.schemas.ticket import AgentActions, TicketFacts, TranscriptMessage

EventPhase = Literal["started", "progress", "completed"]


class BatchTicket(BaseModel):
    """One conversation queued for evaluation in a session."""

    ticket_id: str
    transcript: List[TranscriptMessage]
    ticket_facts: TicketFacts = Field(default_factory=TicketFacts)
    agent_actions: AgentActions = Field(default_factory=AgentActions)
    conversation_id: Optional[str] = None
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    created_by: Optional[str] = None


class BatchError(BaseModel):
    ticket_id: str
    error: str


class BatchCounters(BaseModel):
    session_id: str
    total: int
    completed: int = 0
    failed: int = 0
    pass_: int = Field(default=0, alias="pass")
    fail: int = 0
    needs_review: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0

    model_config = {"populate_by_name": True}

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 100
        return round((self.completed + self.failed) / self.total * 100)

    def progress_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(by_alias=True)
        payload["percent"] = self.percent
        return payload


class BatchResult(BaseModel):
    counters: BatchCounters
    evaluations: List[TicketEvaluation] = Field(default_factory=list)
    errors: List[BatchError] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime
    duration_ms: int


class ProgressEvent(BaseModel):
    session_id: str
    phase: EventPhase
    payload: Dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime
