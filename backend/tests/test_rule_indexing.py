from pathlib import Path

import pytest

from ticket_audit.rag.indexer import index_rule_corpus, index_rules

REPO_ROOT = Path(__file__).resolve().parents[2]


@pytest.mark.asyncio
async def test_index_rules_stores_chunks(corpus_store, sample_rules, embedding_provider):
    total = await index_rules(sample_rules, corpus_store, embedding_provider)
    assert total == len(sample_rules)

    rules = await corpus_store.get_rules([r.rule_id for r in sample_rules])
    assert {r.rule_id for r in rules} == {r.rule_id for r in sample_rules}

    tagged = await corpus_store.find_by_tags(["self_exclusion"])
    assert [c.rule_id for c in tagged] == ["RG-001"]


@pytest.mark.asyncio
async def test_reindexing_replaces_chunks(corpus_store, sample_rules, embedding_provider):
    await index_rules(sample_rules, corpus_store, embedding_provider)
    await index_rules(sample_rules, corpus_store, embedding_provider)
    results = await corpus_store.semantic_search([0.0] * 64, limit=100)
    assert len(results) == len(sample_rules)


@pytest.mark.asyncio
async def test_index_bundled_rule_corpus(corpus_store, embedding_provider):
    total = await index_rule_corpus(REPO_ROOT / "data" / "rules", corpus_store, embedding_provider)
    assert total > 0
    rules = await corpus_store.get_rules(["ACC-001", "RG-001", "REG-ON-001"])
    assert len(rules) == 3


@pytest.mark.asyncio
async def test_index_empty_corpus(tmp_path, corpus_store, embedding_provider):
    assert await index_rule_corpus(tmp_path / "nothing", corpus_store, embedding_provider) == 0
