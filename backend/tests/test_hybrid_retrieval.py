from typing import List

import pytest

from ticket_audit.rag.chunking import build_embedding_input
from ticket_audit.rag.embeddings import EmbeddingProvider
from ticket_audit.rag.retriever import (
    HybridRetriever,
    RetrievalError,
    format_rules_for_prompt,
    format_thin_rules_for_prompt,
    mandatory_tags_from_category,
    mandatory_tags_from_facts,
)
from ticket_audit.schemas.rules import ChunkMetadata, RuleChunk, RuleDocument
from ticket_audit.schemas.ticket import TicketFacts
from ticket_audit.storage.vector_store import RuleCorpusStore


class BrokenStore:
    async def semantic_search(self, *args, **kwargs):
        raise ConnectionError("corpus unreachable")

    async def find_by_tags(self, *args, **kwargs):
        raise ConnectionError("corpus unreachable")

    async def get_rules(self, *args, **kwargs):
        raise ConnectionError("corpus unreachable")


@pytest.mark.asyncio
async def test_mandatory_tag_rule_included_below_similarity_floor(settings, seeded_store, embedding_provider):
    strict = settings.model_copy(update={"retrieval_min_similarity": 0.99})
    retriever = HybridRetriever(strict, seeded_store, embedding_provider)

    result = await retriever.retrieve(
        "Customer asked about the weather.",
        ticket_facts=TicketFacts(account_restriction_state="self_excluded"),
    )

    assert [c.rule_id for c in result.chunks] == ["RG-001"]
    chunk = result.chunks[0]
    assert chunk.source == "mandatory_tag"
    assert chunk.similarity == pytest.approx(0.5)
    assert result.stats.semantic_count == 0
    assert "self_exclusion" in result.stats.mandatory_tags_used


@pytest.mark.asyncio
async def test_semantic_match_ranks_first_and_is_not_duplicated(retriever, sample_rules):
    rule = next(r for r in sample_rules if r.rule_id == "RG-001")

    result = await retriever.retrieve(
        build_embedding_input(rule),
        classification_tags=["self_exclusion"],
    )

    assert result.chunks[0].rule_id == "RG-001"
    assert result.chunks[0].source == "semantic"
    assert result.chunks[0].similarity == pytest.approx(1.0)
    assert [c.rule_id for c in result.chunks].count("RG-001") == 1


@pytest.mark.asyncio
async def test_results_are_truncated_to_total_limit(settings, seeded_store, embedding_provider):
    narrow = settings.model_copy(update={"retrieval_total_limit": 2, "retrieval_min_similarity": -1.0})
    retriever = HybridRetriever(narrow, seeded_store, embedding_provider)
    result = await retriever.retrieve("withdrawal kyc deposit password bonus")
    assert len(result.chunks) == 2
    assert result.stats.final_count == 2
    assert result.chunks[0].similarity >= result.chunks[1].similarity


@pytest.mark.asyncio
async def test_store_failure_raises_retrieval_error(settings, embedding_provider):
    retriever = HybridRetriever(settings, BrokenStore(), embedding_provider)
    with pytest.raises(RetrievalError):
        await retriever.retrieve("Where is my withdrawal?")
    with pytest.raises(RetrievalError):
        await retriever.fetch_full_rules([])


@pytest.mark.asyncio
async def test_fetch_full_rules_and_prompt_formatting(retriever):
    chunks = await retriever.retrieve_by_tags(["kyc_rejected"])
    assert [c.rule_id for c in chunks] == ["PAY-001"]
    assert chunks[0].rule is not None

    thin = format_thin_rules_for_prompt(chunks)
    assert thin.startswith("1. PAY-001: Withdrawals require completed KYC [high]")

    full = format_rules_for_prompt(chunks)
    assert "[RULE 1]" in full
    assert "ID: PAY-001" in full


@pytest.mark.asyncio
async def test_retrieve_by_category(retriever):
    chunks = await retriever.retrieve_by_category("payments")
    assert {c.rule_id for c in chunks} == {"PAY-001", "PAY-002"}
    assert all(c.source == "category" for c in chunks)


def test_mandatory_tag_maps():
    facts = TicketFacts(account_auth_method="google", region_flags=["ON"], kyc_state="unknown")
    tags = mandatory_tags_from_facts(facts)
    assert tags[:3] == ["auth_google", "social_login", "no_password"]
    assert "region_ON" in tags
    assert not any(t.startswith("kyc") for t in tags)

    category_tags = mandatory_tags_from_category("Self Exclusion", ["forgot password"])
    assert "self_exclusion_rules" in category_tags
    assert "password_reset" in category_tags


class FixedEmbeddingProvider(EmbeddingProvider):
    def __init__(self, vector: List[float]) -> None:
        self.vector = vector

    @property
    def dimension(self) -> int:
        return len(self.vector)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        return [list(self.vector) for _ in texts]


def _seed(store: RuleCorpusStore, rule_id: str, embedding: List[float], tags: List[str]) -> None:
    store.upsert_rule(RuleDocument(rule_id=rule_id, title=f"Rule {rule_id}", rule_text="text", tags=tags))
    store.upsert_chunks(
        rule_id,
        [
            RuleChunk(
                chunk_id=f"{rule_id}_0",
                rule_id=rule_id,
                embedding_input=f"text for {rule_id}",
                embedding=embedding,
                metadata=ChunkMetadata(tags=tags, severity="high"),
                token_count=5,
            )
        ],
    )


@pytest.mark.asyncio
async def test_tag_only_rule_survives_tag_sharing_semantic_hits(settings, tmp_path):
    store = RuleCorpusStore(tmp_path / "crowded.sqlite")
    for index in range(5):
        _seed(store, f"RG-{index}", [1.0, 0.05 * index, 0.0], ["responsible_gambling", "self_exclusion"])
    _seed(store, "ON-REG", [0.0, 1.0, 0.0], ["region_ON"])
    retriever = HybridRetriever(settings, store, FixedEmbeddingProvider([1.0, 0.0, 0.0]))

    result = await retriever.retrieve(
        "Self-excluded player in Ontario asked about limits.",
        ticket_facts=TicketFacts(account_restriction_state="self_excluded", region_flags=["ON"]),
    )

    rule_ids = [c.rule_id for c in result.chunks]
    assert rule_ids[:5] == ["RG-0", "RG-1", "RG-2", "RG-3", "RG-4"]
    assert rule_ids[5:] == ["ON-REG"]
    assert result.chunks[5].source == "mandatory_tag"
    assert result.stats.mandatory_count == 1


@pytest.mark.asyncio
async def test_embedding_dimension_mismatch_raises_retrieval_error(settings, tmp_path):
    store = RuleCorpusStore(tmp_path / "stale.sqlite")
    _seed(store, "OLD-1", [1.0, 0.0, 0.0], ["kyc_requirements"])
    retriever = HybridRetriever(settings, store, FixedEmbeddingProvider([1.0, 0.0]))

    with pytest.raises(RetrievalError, match="reindex"):
        await retriever.retrieve("Where is my withdrawal?")
