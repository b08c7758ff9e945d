import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import jsonschema
from pydantic import ValidationError

from ticket_audit.core.config import Settings
from ticket_audit.llm.pricing import calculate_cost
from ticket_audit.llm.provider import LLMMessage, LLMProvider, LLMUsage
from ticket_audit.rag.retriever import (
    HybridRetriever,
    RetrievalError,
    format_rules_for_prompt,
    format_thin_rules_for_prompt,
)
from ticket_audit.schemas.evaluation import (
    FINDING_TYPES,
    SEVERITIES,
    SYSTEM_RULE_ID,
    Classification,
    Evidence,
    Finding,
    GuardrailRecord,
    ModelEvaluationOutput,
    ModelFinding,
    RetrievedRule,
    TicketEvaluation,
    TokenUsage,
)
from ticket_audit.schemas.rules import ScoredChunk
from ticket_audit.schemas.ticket import AgentActions, TicketFacts, TranscriptMessage
from ticket_audit.services.classifier import classify_ticket
from ticket_audit.services.guardrails import GuardrailEngine
from ticket_audit.services.summarizer import Summarizer
from ticket_audit.services.transcript import (
    format_facts_for_prompt,
    format_transcript_for_prompt,
    normalize_speaker,
)
from ticket_audit.storage.evaluation_store import EvaluationStore

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """QA auditor evaluating support tickets against rules. Return JSON only.

RULES:
- Only use evidence from transcript and TicketFacts
- If uncertain, use "potential_violation" with verification_needed=true
- Cite specific quotes from transcript

OUTPUT JSON:
{"overall_status":"pass|fail|needs_review","confidence":0.0-1.0,"findings":[{"type":"violation|potential_violation|improvement|positive","severity":"critical|high|medium|low","rule_id":"ID","rule_title":"title","explanation":"what happened","ticket_evidence":[{"speaker":"agent|user","excerpt":"quote"}],"verification_needed":false}]}

SEVERITY: critical=regulatory/harm, high=clear violation, medium=suboptimal, low=minor"""

MODEL_OUTPUT_SCHEMA = ModelEvaluationOutput.model_json_schema()

FENCED_JSON_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

DEFAULT_CONFIDENCE = 0.7
FALLBACK_CONFIDENCE = 0.5
TRUNCATION_MARKER = "\n[...]"


class ModelOutputError(ValueError):
    """Raised when model output is empty, not JSON, or fails schema validation."""


class EvaluationStage(str, Enum):
    SUMMARIZING = "summarizing"
    CLASSIFYING = "classifying"
    GUARDRAIL_CHECKING = "guardrail-checking"
    RETRIEVING = "retrieving"
    PROMPTING = "prompting"
    MODEL_CALLING = "model-calling"
    SANITIZING = "sanitizing"
    RECONCILING = "reconciling"
    PERSISTED = "persisted"


STAGE_ORDER = list(EvaluationStage)


class StageTracker:
    """Forward-only walk through the evaluation stages of one ticket."""

    def __init__(self, ticket_id: str) -> None:
        self.ticket_id = ticket_id
        self.history: List[EvaluationStage] = []

    def enter(self, stage: EvaluationStage) -> None:
        if self.history and STAGE_ORDER.index(stage) <= STAGE_ORDER.index(self.history[-1]):
            raise RuntimeError(f"Stage {stage.value} cannot follow {self.history[-1].value}")
        self.history.append(stage)
        logger.debug("Evaluation stage", extra={"ticket_id": self.ticket_id, "stage": stage.value})


@dataclass(frozen=True)
class PromptBudget:
    transcript_chars: int
    rules_chars: Optional[int] = None
    detailed: bool = True


RETRY_BUDGETS = (
    PromptBudget(transcript_chars=1000, rules_chars=2000, detailed=False),
    PromptBudget(transcript_chars=500, rules_chars=1000, detailed=False),
)


def sanitize_finding(raw: ModelFinding) -> Finding:
    return Finding(
        type=raw.type if raw.type in FINDING_TYPES else "note",
        severity=raw.severity if raw.severity in SEVERITIES else "medium",
        rule_id=raw.rule_id,
        rule_title=raw.rule_title,
        rule_text_excerpt=raw.rule_text_excerpt,
        explanation=raw.explanation,
        recommended_fix=raw.recommended_fix,
        ticket_evidence=[
            Evidence(message_id=e.message_id, speaker=normalize_speaker(e.speaker), excerpt=e.excerpt)
            for e in raw.ticket_evidence
        ],
        verification_needed=raw.verification_needed,
        what_to_verify=raw.what_to_verify,
        why_uncertain=raw.why_uncertain,
    )


def sanitize_findings(findings: Sequence[ModelFinding]) -> List[Finding]:
    return [sanitize_finding(f) for f in findings]


def parse_model_output(raw: Optional[str]) -> ModelEvaluationOutput:
    """Strictly deserialize the model's answer; any deviation raises ``ModelOutputError``."""
    if not raw or not raw.strip():
        raise ModelOutputError("Model returned empty output")

    text = raw.strip()
    match = FENCED_JSON_RE.match(text)
    if match:
        text = match.group(1)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ModelOutputError("Model output is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ModelOutputError("Model output must be a JSON object")

    try:
        jsonschema.validate(instance=data, schema=MODEL_OUTPUT_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise ModelOutputError(f"Model output failed JSON schema validation: {exc.message}") from exc

    try:
        return ModelEvaluationOutput.model_validate(data)
    except ValidationError as exc:
        raise ModelOutputError("Model output failed model validation") from exc


def reconcile_findings(model_findings: List[Finding], guardrail_findings: List[Finding]) -> List[Finding]:
    """Add guardrail findings the model did not already report."""
    merged = list(model_findings)
    for guardrail_finding in guardrail_findings:
        prefix = guardrail_finding.explanation[:50]
        already_included = any(
            f.rule_id == guardrail_finding.rule_id or (prefix and prefix in f.explanation)
            for f in merged
        )
        if not already_included:
            merged.append(guardrail_finding)
    return merged


def determine_overall_status(findings: Sequence[Finding], reported_status: Optional[str]) -> str:
    violations = [f for f in findings if f.type == "violation"]
    has_critical = any(f.severity == "critical" for f in violations)
    high_count = sum(1 for f in violations if f.severity == "high")
    has_potential = any(f.type == "potential_violation" for f in findings)

    if has_critical or high_count > 1:
        return "fail"
    if has_potential and high_count == 0:
        return "needs_review"
    return reported_status or "pass"


def _truncate(text: str, limit: Optional[int]) -> str:
    if limit is None or len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


class EvaluatorService:
    """Runs one ticket through the full evaluation pipeline and persists the result."""

    def __init__(
        self,
        settings: Settings,
        llm_provider: LLMProvider,
        retriever: HybridRetriever,
        store: EvaluationStore,
        summarizer: Optional[Summarizer] = None,
        guardrails: Optional[GuardrailEngine] = None,
    ) -> None:
        self.settings = settings
        self.llm_provider = llm_provider
        self.retriever = retriever
        self.store = store
        self.summarizer = summarizer or Summarizer(settings, llm_provider)
        self.guardrails = guardrails or GuardrailEngine()

    async def evaluate_ticket(
        self,
        ticket_id: str,
        transcript: List[TranscriptMessage],
        ticket_facts: Optional[TicketFacts] = None,
        agent_actions: Optional[AgentActions] = None,
        conversation_id: Optional[str] = None,
        session_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> TicketEvaluation:
        facts = ticket_facts or TicketFacts()
        actions = agent_actions or AgentActions()
        started_at = datetime.now(timezone.utc)
        start = time.perf_counter()
        stages = StageTracker(ticket_id)

        stages.enter(EvaluationStage.SUMMARIZING)
        summary = await self.summarizer.summarize(transcript)

        stages.enter(EvaluationStage.CLASSIFYING)
        classification = classify_ticket(summary, facts)

        stages.enter(EvaluationStage.GUARDRAIL_CHECKING)
        guardrail_findings = self.guardrails.quick_guardrail_check(facts, transcript, actions)

        stages.enter(EvaluationStage.RETRIEVING)
        chunks: List[ScoredChunk] = []
        retrieval_error: Optional[str] = None
        try:
            retrieval = await self.retriever.retrieve(
                ticket_summary=summary,
                ticket_entities=classification.key_entities,
                ticket_facts=facts,
                agent_actions=actions,
                category=classification.category,
                classification_tags=classification.mandatory_tags,
            )
            chunks = await self.retriever.fetch_full_rules(retrieval.chunks)
        except RetrievalError as exc:
            retrieval_error = str(exc)
            logger.warning(
                "Rule retrieval failed, evaluation needs review",
                extra={"ticket_id": ticket_id, "error": retrieval_error},
            )
        else:
            if not chunks:
                logger.warning("No rules retrieved for ticket", extra={"ticket_id": ticket_id})

        usage = LLMUsage()
        if retrieval_error is not None:
            output = self._fallback_output(
                classification,
                "Rule Retrieval Unavailable",
                f"Compliance rules could not be retrieved ({retrieval_error}). Manual review required.",
            )
        else:
            stages.enter(EvaluationStage.PROMPTING)
            transcript_text = format_transcript_for_prompt(transcript)

            stages.enter(EvaluationStage.MODEL_CALLING)
            output, usage, last_error = await self._call_model(
                ticket_id, summary, facts, transcript_text, chunks, guardrail_findings
            )
            if output is None:
                attempts = self.settings.llm_max_retries + 1
                logger.warning(
                    "All model attempts failed, evaluation needs review",
                    extra={"ticket_id": ticket_id, "attempts": attempts, "error": last_error},
                )
                output = self._fallback_output(
                    classification,
                    "AI Evaluation Unavailable",
                    f"AI evaluation failed after {attempts} attempts. Manual review required.",
                )

        stages.enter(EvaluationStage.SANITIZING)
        findings = sanitize_findings(output.findings)

        stages.enter(EvaluationStage.RECONCILING)
        findings = reconcile_findings(findings, guardrail_findings)
        overall_status = determine_overall_status(findings, output.overall_status)

        cost = calculate_cost(self.settings.llm_model, usage.prompt_tokens, usage.cached_tokens, usage.completion_tokens)
        completed_at = datetime.now(timezone.utc)
        evaluation = TicketEvaluation(
            ticket_id=ticket_id,
            conversation_id=conversation_id,
            session_id=session_id,
            agent_id=agent_id,
            agent_name=agent_name,
            category=output.category or classification.category,
            subcategory=output.subcategory or classification.subcategory,
            risk_level=classification.risk_level,
            overall_status=overall_status,
            confidence=output.confidence if output.confidence is not None else DEFAULT_CONFIDENCE,
            findings=findings,
            ticket_facts=facts,
            agent_actions=actions,
            retrieved_rules=[
                RetrievedRule(
                    rule_id=c.rule_id,
                    title=c.rule.title if c.rule else "Unknown",
                    similarity=c.similarity,
                    source=c.source,
                )
                for c in chunks
            ],
            guardrail_findings=[
                GuardrailRecord(type=f.type, rule_triggered=f.rule_id or "", description=f.explanation)
                for f in guardrail_findings
            ],
            model_used=self.settings.llm_model,
            token_usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens,
                cached_tokens=usage.cached_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                estimated_cost=cost,
            ),
            evaluation_started_at=started_at,
            evaluation_completed_at=completed_at,
            evaluation_duration_ms=int((time.perf_counter() - start) * 1000),
            created_by=created_by,
        )

        await self.store.create(evaluation)
        stages.enter(EvaluationStage.PERSISTED)
        logger.info(
            "Ticket evaluated",
            extra={
                "ticket_id": ticket_id,
                "overall_status": overall_status,
                "findings": len(findings),
                "total_tokens": usage.total_tokens,
                "estimated_cost": cost,
            },
        )
        return evaluation

    async def re_evaluate(
        self,
        evaluation_id: str,
        transcript: List[TranscriptMessage],
        ticket_facts: Optional[Dict[str, Any]] = None,
        agent_actions: Optional[Dict[str, Any]] = None,
    ) -> TicketEvaluation:
        """Replace an evaluation with a fresh one, merging extra context onto its snapshot."""
        existing = await self.store.get(evaluation_id)
        facts = TicketFacts.model_validate({**existing.ticket_facts.model_dump(), **(ticket_facts or {})})
        actions = AgentActions.model_validate({**existing.agent_actions.model_dump(), **(agent_actions or {})})

        await self.store.delete(evaluation_id)
        logger.info(
            "Re-evaluating ticket",
            extra={"ticket_id": existing.ticket_id, "previous_evaluation_id": evaluation_id},
        )
        return await self.evaluate_ticket(
            ticket_id=existing.ticket_id,
            transcript=transcript,
            ticket_facts=facts,
            agent_actions=actions,
            conversation_id=existing.conversation_id,
            session_id=existing.session_id,
            agent_id=existing.agent_id,
            agent_name=existing.agent_name,
            created_by=existing.created_by,
        )

    def _prompt_budgets(self) -> List[PromptBudget]:
        budgets = [PromptBudget(transcript_chars=self.settings.prompt_transcript_chars)]
        for attempt in range(self.settings.llm_max_retries):
            retry = RETRY_BUDGETS[min(attempt, len(RETRY_BUDGETS) - 1)]
            previous = budgets[-1]
            budgets.append(
                PromptBudget(
                    transcript_chars=min(previous.transcript_chars, retry.transcript_chars),
                    rules_chars=(
                        retry.rules_chars
                        if previous.rules_chars is None
                        else min(previous.rules_chars, retry.rules_chars)
                    ),
                    detailed=False,
                )
            )
        return budgets

    def _build_user_prompt(
        self,
        summary: str,
        facts: TicketFacts,
        transcript_text: str,
        rules_text: str,
        guardrail_findings: List[Finding],
        budget: PromptBudget,
    ) -> str:
        transcript_part = _truncate(transcript_text, budget.transcript_chars)
        rules_part = rules_text if budget.rules_chars is None else rules_text[: budget.rules_chars]
        if not budget.detailed:
            return f"TICKET: {summary}\n\nTRANSCRIPT:\n{transcript_part}\n\nRULES:\n{rules_part}\n\nReturn JSON."

        prompt = (
            f"TICKET: {summary}\n\n"
            f"FACTS:\n{format_facts_for_prompt(facts)}\n\n"
            f"TRANSCRIPT:\n{transcript_part}\n\n"
            f"RULES:\n{rules_part}\n"
        )
        if guardrail_findings:
            prompt += "\nPRE-FLAGGED: " + ", ".join(f.rule_title or f.rule_id or "" for f in guardrail_findings)
        return prompt + "\n\nEvaluate and return JSON."

    async def _call_model(
        self,
        ticket_id: str,
        summary: str,
        facts: TicketFacts,
        transcript_text: str,
        chunks: List[ScoredChunk],
        guardrail_findings: List[Finding],
    ) -> Tuple[Optional[ModelEvaluationOutput], LLMUsage, Optional[str]]:
        prompt_tokens = cached_tokens = completion_tokens = 0
        last_error: Optional[str] = None
        full_rules = format_rules_for_prompt(chunks) or "No rules retrieved."
        thin_rules = format_thin_rules_for_prompt(chunks) or "No rules retrieved."

        for attempt, budget in enumerate(self._prompt_budgets()):
            if attempt > 0:
                logger.info(
                    "Retrying evaluation with shorter prompt",
                    extra={"ticket_id": ticket_id, "attempt": attempt},
                )
                await self._wait_before_retry(attempt)
            rules_text = full_rules if budget.detailed else thin_rules
            messages = [
                LLMMessage(role="system", content=SYSTEM_PROMPT),
                LLMMessage(
                    role="user",
                    content=self._build_user_prompt(
                        summary, facts, transcript_text, rules_text, guardrail_findings, budget
                    ),
                ),
            ]
            try:
                completion = await self.llm_provider.generate(
                    messages,
                    self.settings.llm_model,
                    max_completion_tokens=self.settings.evaluation_max_completion_tokens,
                )
                prompt_tokens += completion.usage.prompt_tokens
                cached_tokens += completion.usage.cached_tokens
                completion_tokens += completion.usage.completion_tokens
                output = parse_model_output(completion.content)
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "Evaluation attempt failed",
                    extra={"ticket_id": ticket_id, "attempt": attempt, "error": last_error},
                )
                continue

            logger.debug(
                "Parsed model output",
                extra={"ticket_id": ticket_id, "attempt": attempt, "findings": len(output.findings)},
            )
            return output, LLMUsage(prompt_tokens, cached_tokens, completion_tokens), None

        return None, LLMUsage(prompt_tokens, cached_tokens, completion_tokens), last_error

    async def _wait_before_retry(self, attempt: int) -> None:
        """Exponential backoff before the given retry attempt (1-based)."""
        delay = self.settings.llm_retry_delay_seconds * (2 ** (attempt - 1))
        if delay > 0:
            await asyncio.sleep(delay)

    def _fallback_output(self, classification: Classification, title: str, explanation: str) -> ModelEvaluationOutput:
        return ModelEvaluationOutput(
            overall_status="needs_review",
            confidence=FALLBACK_CONFIDENCE,
            category=classification.category,
            subcategory=classification.subcategory,
            findings=[
                ModelFinding(
                    type="note",
                    severity="low",
                    rule_id=SYSTEM_RULE_ID,
                    rule_title=title,
                    explanation=explanation,
                    verification_needed=True,
                    what_to_verify="Full manual review of ticket",
                )
            ],
        )
