import logging
from pathlib import Path
from typing import List

from ticket_audit.rag.chunking import chunk_rule_document, load_rule_documents
from ticket_audit.rag.embeddings import EmbeddingProvider
from ticket_audit.schemas.rules import RuleChunk, RuleDocument
from ticket_audit.storage.vector_store import RuleCorpusStore

logger = logging.getLogger(__name__)


async def index_rules(
    rules: List[RuleDocument],
    store: RuleCorpusStore,
    embedding_provider: EmbeddingProvider,
) -> int:
    """Embed and store the chunks of each rule, replacing any previous version."""
    total_chunks = 0
    for rule in rules:
        drafts = chunk_rule_document(rule)
        embeddings = await embedding_provider.embed([draft.text for draft in drafts])
        if len(embeddings) != len(drafts):
            raise ValueError("Chunk and embedding counts do not match")
        chunks = [
            RuleChunk(
                chunk_id=draft.chunk_id,
                rule_id=draft.rule_id,
                embedding_input=draft.text,
                embedding=embedding,
                metadata=draft.metadata,
                token_count=draft.token_count,
                is_active=rule.is_active,
            )
            for draft, embedding in zip(drafts, embeddings)
        ]
        store.upsert_rule(rule)
        store.upsert_chunks(rule.rule_id, chunks)
        total_chunks += len(chunks)
    return total_chunks


async def index_rule_corpus(
    corpus_path: Path,
    store: RuleCorpusStore,
    embedding_provider: EmbeddingProvider,
) -> int:
    """Index a directory of JSON rule documents into the corpus store."""
    rules = load_rule_documents(corpus_path)
    if not rules:
        logger.warning("No rule documents found", extra={"path": str(corpus_path)})
        return 0

    total_chunks = await index_rules(rules, store, embedding_provider)
    logger.info("Indexed rule corpus", extra={"rules": len(rules), "chunks": total_chunks})
    return total_chunks
