import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from ticket_audit.core.config import Settings
from ticket_audit.schemas.batch import BatchCounters, BatchError, BatchResult, BatchTicket
from ticket_audit.schemas.evaluation import TicketEvaluation
from ticket_audit.services.evaluator_service import EvaluatorService
from ticket_audit.services.events import ProgressEventChannel

logger = logging.getLogger(__name__)


def format_duration(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    return f"{ms // 60000}m {round((ms % 60000) / 1000)}s"


def _error_message(outcome: BaseException) -> str:
    if isinstance(outcome, asyncio.CancelledError):
        return "Evaluation cancelled"
    return str(outcome) or outcome.__class__.__name__


class BatchOrchestrator:
    """Evaluates a session's tickets in fixed-size concurrency windows."""

    def __init__(
        self,
        evaluator: EvaluatorService,
        channel: Optional[ProgressEventChannel] = None,
        settings: Optional[Settings] = None,
        concurrency: Optional[int] = None,
    ) -> None:
        self.evaluator = evaluator
        self.channel = channel or ProgressEventChannel()
        self.concurrency = concurrency or (settings.batch_concurrency if settings else 3)

    async def run(self, session_id: str, tickets: Sequence[BatchTicket]) -> BatchResult:
        counters = BatchCounters(session_id=session_id, total=len(tickets))
        evaluations: List[TicketEvaluation] = []
        errors: List[BatchError] = []
        started_at = datetime.now(timezone.utc)
        start = time.perf_counter()

        self.channel.publish(
            session_id,
            "started",
            {"session_id": session_id, "total": counters.total, "started_at": started_at.isoformat()},
        )
        logger.info(
            "Batch evaluation started",
            extra={"session_id": session_id, "total": counters.total, "concurrency": self.concurrency},
        )

        for offset in range(0, len(tickets), self.concurrency):
            window = tickets[offset : offset + self.concurrency]
            tasks = [asyncio.create_task(self._evaluate(session_id, ticket)) for ticket in window]
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)

            for ticket, outcome in zip(window, outcomes):
                if isinstance(outcome, BaseException):
                    counters.failed += 1
                    errors.append(BatchError(ticket_id=ticket.ticket_id, error=_error_message(outcome)))
                    logger.error(
                        "Ticket evaluation failed",
                        extra={"session_id": session_id, "ticket_id": ticket.ticket_id, "error": _error_message(outcome)},
                    )
                    continue
                evaluations.append(outcome)
                counters.completed += 1
                if outcome.overall_status == "pass":
                    counters.pass_ += 1
                elif outcome.overall_status == "fail":
                    counters.fail += 1
                else:
                    counters.needs_review += 1
                counters.total_tokens += outcome.token_usage.total_tokens
                counters.total_cost += outcome.token_usage.estimated_cost

            self.channel.publish(session_id, "progress", counters.progress_payload())
            logger.info("Batch progress", extra=counters.progress_payload())

        duration_ms = int((time.perf_counter() - start) * 1000)
        completed_at = datetime.now(timezone.utc)
        payload = counters.progress_payload()
        payload.update(
            {
                "errors": [e.model_dump() for e in errors],
                "duration_ms": duration_ms,
                "duration_formatted": format_duration(duration_ms),
            }
        )
        self.channel.publish(session_id, "completed", payload)
        logger.info(
            "Batch evaluation completed",
            extra={
                "session_id": session_id,
                "completed": counters.completed,
                "failed": counters.failed,
                "duration": format_duration(duration_ms),
                "total_cost": round(counters.total_cost, 4),
            },
        )
        return BatchResult(
            counters=counters,
            evaluations=evaluations,
            errors=errors,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
        )

    async def _evaluate(self, session_id: str, ticket: BatchTicket) -> TicketEvaluation:
        return await self.evaluator.evaluate_ticket(
            ticket_id=ticket.ticket_id,
            transcript=ticket.transcript,
            ticket_facts=ticket.ticket_facts,
            agent_actions=ticket.agent_actions,
            conversation_id=ticket.conversation_id,
            session_id=session_id,
            agent_id=ticket.agent_id,
            agent_name=ticket.agent_name,
            created_by=ticket.created_by,
        )
