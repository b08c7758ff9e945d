"""Hybrid rule retrieval: semantic similarity plus mandatory tag inclusion.

The tag channel backstops the semantic one: a rule that policy makes
mandatory for a ticket (jurisdiction, account restriction, auth method) is
included even when its text is not a close semantic match.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ticket_audit.core.config import Settings
from ticket_audit.rag.embeddings import EmbeddingProvider, build_ticket_query_text
from ticket_audit.schemas.rules import SEVERITY_RANK, ScoredChunk
from ticket_audit.schemas.ticket import AgentActions, TicketFacts
from ticket_audit.storage.vector_store import RuleCorpusStore

logger = logging.getLogger(__name__)


class RetrievalError(RuntimeError):
    """Raised when the rule corpus cannot be queried."""


COVERAGE_TAGS: Dict[str, Tuple[str, ...]] = {
    "login": ("auth_prerequisites", "social_login_exceptions", "password_reset_prerequisites"),
    "password_reset": ("password_reset_prerequisites", "auth_google", "auth_apple", "social_login"),
    "withdrawal": ("withdrawal_procedures", "kyc_requirements", "payment_verification"),
    "kyc": ("kyc_requirements", "document_verification", "identity_check"),
    "deposit": ("deposit_procedures", "payment_methods", "bonus_terms"),
    "self_exclusion": ("self_exclusion_rules", "responsible_gambling", "account_restrictions"),
    "account_access": ("auth_prerequisites", "account_recovery", "security_verification"),
}

FACT_TAGS: Dict[str, Tuple[str, ...]] = {
    "account_auth_method:google": ("auth_google", "social_login", "no_password"),
    "account_auth_method:apple": ("auth_apple", "social_login", "no_password"),
    "account_auth_method:facebook": ("auth_facebook", "social_login"),
    "has_password:false": ("no_password", "social_login"),
    "account_restriction_state:self_excluded": ("self_exclusion", "responsible_gambling"),
    "account_restriction_state:cooling_off": ("cooling_off", "responsible_gambling"),
    "region_flags:ON": ("region_ON", "ontario_regulations"),
    "kyc_state:pending": ("kyc_pending", "document_verification"),
    "kyc_state:rejected": ("kyc_rejected", "document_resubmission"),
    "withdrawal_state:pending": ("withdrawal_pending", "payment_processing"),
    "withdrawal_state:reversed": ("withdrawal_reversed", "reversal_procedures"),
}

ENTITY_TAGS: Dict[str, Tuple[str, ...]] = {
    "forgot password": ("password_reset", "password_reset_prerequisites"),
    "reset password": ("password_reset", "password_reset_prerequisites"),
    "cannot login": ("login_issues", "auth_prerequisites"),
    "google": ("auth_google", "social_login"),
    "apple": ("auth_apple", "social_login"),
    "withdraw": ("withdrawal_procedures", "payment_verification"),
    "deposit": ("deposit_procedures", "payment_methods"),
    "kyc": ("kyc_requirements", "document_verification"),
    "verification": ("identity_check", "document_verification"),
    "self-exclu": ("self_exclusion", "responsible_gambling"),
    "limit": ("betting_limits", "responsible_gambling"),
}


def mandatory_tags_from_facts(ticket_facts: TicketFacts) -> List[str]:
    tags: List[str] = []
    for key, value in ticket_facts.model_dump(exclude={"custom"}).items():
        values = value if isinstance(value, list) else [value]
        for item in values:
            if not item or item == "unknown":
                continue
            tags.extend(FACT_TAGS.get(f"{key}:{item}", ()))
    return list(dict.fromkeys(tags))


def mandatory_tags_from_category(category: Optional[str], entities: Sequence[str] = ()) -> List[str]:
    tags: List[str] = []
    category_key = (category or "").lower().replace(" ", "_").replace("-", "_")
    for key, coverage in COVERAGE_TAGS.items():
        if key in category_key:
            tags.extend(coverage)

    for entity in entities:
        entity_lower = entity.lower()
        for keyword, keyword_tags in ENTITY_TAGS.items():
            if keyword in entity_lower:
                tags.extend(keyword_tags)
    return list(dict.fromkeys(tags))


@dataclass
class RetrievalStats:
    semantic_count: int = 0
    mandatory_count: int = 0
    final_count: int = 0
    total_tokens: int = 0
    mandatory_tags_used: List[str] = field(default_factory=list)


@dataclass
class RetrievalResult:
    chunks: List[ScoredChunk]
    stats: RetrievalStats


def _rank_key(chunk: ScoredChunk) -> tuple:
    source_rank = 0 if chunk.source == "semantic" else 1
    severity_rank = SEVERITY_RANK.get(chunk.metadata.severity or "", 0)
    return (source_rank, -chunk.similarity, -severity_rank)


class HybridRetriever:
    def __init__(
        self,
        settings: Settings,
        store: RuleCorpusStore,
        embedding_provider: EmbeddingProvider,
    ) -> None:
        self.settings = settings
        self.store = store
        self.embedding_provider = embedding_provider

    async def retrieve(
        self,
        ticket_summary: str,
        ticket_entities: Sequence[str] = (),
        ticket_facts: Optional[TicketFacts] = None,
        agent_actions: Optional[AgentActions] = None,
        category: Optional[str] = None,
        category_id: Optional[str] = None,
        classification_tags: Sequence[str] = (),
    ) -> RetrievalResult:
        facts = ticket_facts or TicketFacts()
        actions = agent_actions or AgentActions()

        query = build_ticket_query_text(ticket_summary, ticket_entities, facts, actions)
        mandatory_tags = list(
            dict.fromkeys(
                [
                    *classification_tags,
                    *mandatory_tags_from_facts(facts),
                    *mandatory_tags_from_category(category, ticket_entities),
                ]
            )
        )

        try:
            semantic: List[ScoredChunk] = []
            if query:
                query_embedding = (await self.embedding_provider.embed([query]))[0]
                semantic = await self.store.semantic_search(
                    query_embedding,
                    limit=self.settings.retrieval_semantic_limit,
                    category_id=category_id,
                )
            semantic = [c for c in semantic if c.similarity >= self.settings.retrieval_min_similarity]
            mandatory: List[ScoredChunk] = []
            if mandatory_tags:
                # rules already matched semantically must not use up tag slots
                mandatory = await self.store.find_by_tags(
                    mandatory_tags,
                    self.settings.retrieval_mandatory_limit,
                    exclude_rule_ids=[c.rule_id for c in semantic],
                )
        except Exception as exc:
            raise RetrievalError(f"Rule corpus query failed: {exc}") from exc

        seen_rule_ids = set()
        merged: List[ScoredChunk] = []
        for chunk in semantic:
            if chunk.rule_id not in seen_rule_ids:
                seen_rule_ids.add(chunk.rule_id)
                merged.append(chunk)
        for chunk in mandatory:
            if chunk.rule_id not in seen_rule_ids:
                seen_rule_ids.add(chunk.rule_id)
                merged.append(
                    chunk.model_copy(
                        update={
                            "similarity": self.settings.mandatory_default_similarity,
                            "source": "mandatory_tag",
                        }
                    )
                )

        merged.sort(key=_rank_key)
        final = merged[: self.settings.retrieval_total_limit]

        stats = RetrievalStats(
            semantic_count=len(semantic),
            mandatory_count=len(mandatory),
            final_count=len(final),
            total_tokens=sum(c.token_count for c in final),
            mandatory_tags_used=mandatory_tags,
        )
        logger.info(
            "Retrieved rules",
            extra={
                "semantic_count": stats.semantic_count,
                "mandatory_count": stats.mandatory_count,
                "final_count": stats.final_count,
                "total_tokens": stats.total_tokens,
            },
        )
        return RetrievalResult(chunks=final, stats=stats)

    async def fetch_full_rules(self, chunks: List[ScoredChunk]) -> List[ScoredChunk]:
        """Attach the active rule document to each chunk, preserving order."""
        try:
            rules = await self.store.get_rules(list(dict.fromkeys(c.rule_id for c in chunks)))
        except Exception as exc:
            raise RetrievalError(f"Rule lookup failed: {exc}") from exc
        by_id = {rule.rule_id: rule for rule in rules}
        return [chunk.model_copy(update={"rule": by_id.get(chunk.rule_id)}) for chunk in chunks]

    async def retrieve_by_category(self, category_id: str, limit: int = 20) -> List[ScoredChunk]:
        return await self.fetch_full_rules(await self.store.find_by_category(category_id, limit))

    async def retrieve_by_tags(self, tags: Sequence[str], limit: int = 10) -> List[ScoredChunk]:
        return await self.fetch_full_rules(await self.store.find_by_tags(tags, limit))


def format_thin_rules_for_prompt(chunks: List[ScoredChunk], max_rule_chars: int = 150) -> str:
    """Compact rule rendering for the evaluation prompt."""
    blocks = []
    for index, chunk in enumerate([c for c in chunks if c.rule is not None], start=1):
        rule = chunk.rule
        text = rule.rule_text
        if len(text) > max_rule_chars:
            text = text[:max_rule_chars] + "..."
        block = f"{index}. {rule.rule_id}: {rule.title} [{rule.severity_default}]\n{text}"
        if rule.disallowed_actions:
            block += "\nNO: " + ", ".join(rule.disallowed_actions[:2])
        blocks.append(block)
    return "\n\n".join(blocks)


def format_rules_for_prompt(chunks: List[ScoredChunk]) -> str:
    blocks = []
    for index, chunk in enumerate([c for c in chunks if c.rule is not None], start=1):
        rule = chunk.rule
        parts = [
            f"[RULE {index}]",
            f"ID: {rule.rule_id}",
            f"Title: {rule.title}",
            f"Severity: {rule.severity_default}",
            "",
            f"Rule: {rule.rule_text}",
        ]
        if rule.steps:
            parts.extend(["", "Steps:"])
            parts.extend(f"  {step.step_number}. {step.action}" for step in rule.steps)
        if rule.disallowed_actions:
            parts.extend(["", "Disallowed: " + ", ".join(rule.disallowed_actions)])
        parts.append("---")
        blocks.append("\n".join(parts))
    return "\n\n".join(blocks)
