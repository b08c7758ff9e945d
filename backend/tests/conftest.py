import json
import sys
from pathlib import Path
from typing import List, Optional, Union

import pytest
import pytest_asyncio

REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = REPO_ROOT / "backend"

if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from ticket_audit.core.config import Settings  # noqa: E402
from ticket_audit.llm.provider import LLMCompletion, LLMMessage, LLMProvider, LLMUsage  # noqa: E402
from ticket_audit.rag.embeddings import HashEmbeddingProvider  # noqa: E402
from ticket_audit.rag.indexer import index_rules  # noqa: E402
from ticket_audit.rag.retriever import HybridRetriever  # noqa: E402
from ticket_audit.schemas.rules import RuleDocument  # noqa: E402
from ticket_audit.storage.evaluation_store import EvaluationStore  # noqa: E402
from ticket_audit.storage.vector_store import RuleCorpusStore  # noqa: E402

ScriptedReply = Union[str, Exception, LLMCompletion]


class ScriptedLLMProvider(LLMProvider):
    """Replays canned replies in order; the last reply repeats once the script runs out."""

    def __init__(self, replies: Optional[List[ScriptedReply]] = None, usage: Optional[LLMUsage] = None) -> None:
        self.replies = list(replies or [])
        self.usage = usage or LLMUsage(prompt_tokens=1000, cached_tokens=0, completion_tokens=200)
        self.calls: List[List[LLMMessage]] = []

    async def generate(self, messages, model, max_completion_tokens=None) -> LLMCompletion:
        self.calls.append(list(messages))
        if not self.replies:
            raise RuntimeError("No scripted reply")
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, LLMCompletion):
            return reply
        return LLMCompletion(content=reply, finish_reason="stop", usage=self.usage)


def model_reply(overall_status: str = "pass", findings: Optional[list] = None, **extra) -> str:
    return json.dumps({"overall_status": overall_status, "confidence": 0.9, "findings": findings or [], **extra})


SAMPLE_RULES = [
    {
        "rule_id": "ACC-001",
        "category_id": "account_access",
        "category_name": "Account Access",
        "subcategory": "Password Reset",
        "title": "Verify sign-in method before sending a password reset",
        "rule_text": "Accounts created with Google or Apple have no password. Do not send reset links to them.",
        "disallowed_actions": ["Send password reset link to social login account"],
        "tags": ["password_reset_prerequisites", "auth_google", "social_login", "no_password"],
        "severity_default": "critical",
    },
    {
        "rule_id": "RG-001",
        "category_id": "responsible_gambling",
        "category_name": "Responsible Gambling",
        "subcategory": "Self-Exclusion",
        "title": "No gambling promotion to self-excluded players",
        "rule_text": "Never mention bonuses, promotions or betting opportunities to a self-excluded player.",
        "disallowed_actions": ["Offer bonus"],
        "tags": ["self_exclusion", "responsible_gambling"],
        "severity_default": "critical",
    },
    {
        "rule_id": "PAY-001",
        "category_id": "payments",
        "category_name": "Payments",
        "subcategory": "Withdrawals",
        "title": "Withdrawals require completed KYC",
        "rule_text": "Withdrawals are processed only after identity verification. Explain resubmission when KYC is rejected.",
        "tags": ["withdrawal_procedures", "kyc_requirements", "kyc_rejected"],
        "severity_default": "high",
    },
    {
        "rule_id": "PAY-002",
        "category_id": "payments",
        "category_name": "Payments",
        "subcategory": "Deposits",
        "title": "Deposit issues need a transaction reference",
        "rule_text": "Ask for the transaction hash or card reference before escalating a missing deposit.",
        "tags": ["deposit_procedures", "payment_methods"],
        "severity_default": "medium",
    },
]


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        artifacts_path=tmp_path / "artifacts",
        llm_api_key="test-key",
        llm_retry_delay_seconds=0,
        embedding_dimension=64,
    )


@pytest.fixture()
def embedding_provider() -> HashEmbeddingProvider:
    return HashEmbeddingProvider(dimension=64)


@pytest.fixture()
def sample_rules() -> List[RuleDocument]:
    return [RuleDocument.model_validate(item) for item in SAMPLE_RULES]


@pytest.fixture()
def corpus_store(settings: Settings) -> RuleCorpusStore:
    return RuleCorpusStore(settings.corpus_db_path, settings.corpus_cache_ttl_seconds)


@pytest_asyncio.fixture()
async def seeded_store(corpus_store, sample_rules, embedding_provider) -> RuleCorpusStore:
    await index_rules(sample_rules, corpus_store, embedding_provider)
    return corpus_store


@pytest.fixture()
def evaluation_store(settings: Settings) -> EvaluationStore:
    return EvaluationStore(settings.evaluations_db_path)


@pytest.fixture()
def retriever(settings, seeded_store, embedding_provider) -> HybridRetriever:
    return HybridRetriever(settings, seeded_store, embedding_provider)
