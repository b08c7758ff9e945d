import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from ticket_audit.core.config import Settings, get_settings
from ticket_audit.core.logging import configure_logging
from ticket_audit.llm.provider import LLMProvider, OpenAIChatProvider
from ticket_audit.rag.embeddings import EmbeddingProvider, HashEmbeddingProvider, OpenAIEmbeddingProvider
from ticket_audit.rag.retriever import HybridRetriever
from ticket_audit.schemas.batch import BatchResult, BatchTicket
from ticket_audit.services.batch_service import BatchOrchestrator
from ticket_audit.services.evaluator_service import EvaluatorService
from ticket_audit.services.events import ProgressEventChannel
from ticket_audit.services.guardrails import GuardrailEngine
from ticket_audit.services.summarizer import Summarizer
from ticket_audit.storage.evaluation_store import EvaluationStore
from ticket_audit.storage.vector_store import RuleCorpusStore

logger = logging.getLogger(__name__)


@dataclass
class AuditServices:
    settings: Settings
    corpus_store: RuleCorpusStore
    evaluation_store: EvaluationStore
    embedding_provider: EmbeddingProvider
    llm_provider: LLMProvider
    retriever: HybridRetriever
    guardrails: GuardrailEngine
    evaluator: EvaluatorService
    events: ProgressEventChannel
    orchestrator: BatchOrchestrator


def build_embedding_provider(settings: Settings) -> EmbeddingProvider:
    if settings.embedding_provider == "openai":
        return OpenAIEmbeddingProvider(
            settings.llm_api_key or "",
            settings.llm_base_url,
            settings.embedding_model,
            settings.embedding_dimension,
            timeout=settings.llm_timeout_seconds,
        )
    return HashEmbeddingProvider(settings.embedding_dimension)


def create_services(
    settings: Optional[Settings] = None,
    llm_provider: Optional[LLMProvider] = None,
    embedding_provider: Optional[EmbeddingProvider] = None,
) -> AuditServices:
    settings = settings or get_settings()

    if llm_provider is None:
        if not settings.llm_api_key:
            logger.warning("LLM_API_KEY is not set; model calls will fail and tickets will need review")
        llm_provider = OpenAIChatProvider(
            settings.llm_api_key or "", settings.llm_base_url, timeout=settings.llm_timeout_seconds
        )
    embedding_provider = embedding_provider or build_embedding_provider(settings)

    corpus_store = RuleCorpusStore(settings.corpus_db_path, settings.corpus_cache_ttl_seconds)
    evaluation_store = EvaluationStore(settings.evaluations_db_path)
    retriever = HybridRetriever(settings, corpus_store, embedding_provider)
    guardrails = GuardrailEngine()
    evaluator = EvaluatorService(
        settings,
        llm_provider,
        retriever,
        evaluation_store,
        summarizer=Summarizer(settings, llm_provider),
        guardrails=guardrails,
    )
    events = ProgressEventChannel(settings.progress_buffer_size)
    orchestrator = BatchOrchestrator(evaluator, events, settings)
    logger.info(
        "Audit services initialized",
        extra={"corpus_db": str(settings.corpus_db_path), "evaluations_db": str(settings.evaluations_db_path)},
    )
    return AuditServices(
        settings=settings,
        corpus_store=corpus_store,
        evaluation_store=evaluation_store,
        embedding_provider=embedding_provider,
        llm_provider=llm_provider,
        retriever=retriever,
        guardrails=guardrails,
        evaluator=evaluator,
        events=events,
        orchestrator=orchestrator,
    )


async def run_session(session_id: str, tickets: Sequence[BatchTicket], settings: Optional[Settings] = None) -> BatchResult:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)
    services = create_services(settings)
    return await services.orchestrator.run(session_id, tickets)
