import logging
import math
import re
from abc import ABC, abstractmethod
from hashlib import sha256
from typing import List, Sequence

import httpx

from ticket_audit.schemas.ticket import AgentActions, TicketFacts

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


class EmbeddingProvider(ABC):
    """Provider-agnostic embedding interface."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        raise NotImplementedError

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic embedding based on hashed tokens (no external services)."""

    def __init__(self, dimension: int = 128) -> None:
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, texts: List[str]) -> List[List[float]]:
        return [self._embed_text(text) for text in texts]

    def _embed_text(self, text: str) -> List[float]:
        vector = [0.0] * self._dimension
        for token in TOKEN_RE.findall(text.lower()):
            digest = sha256(token.encode("utf-8")).hexdigest()
            bucket = int(digest[:8], 16) % self._dimension
            sign = -1.0 if int(digest[8:9], 16) % 2 == 0 else 1.0
            vector[bucket] += sign
        return _normalize(vector)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI-compatible ``/embeddings`` client."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        model: str,
        dimension: int,
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._dimension = dimension
        self.timeout = timeout

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        payload = {"model": self.model, "input": texts, "dimensions": self._dimension}
        headers = {"Authorization": f"Bearer {self.api_key}"}
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(f"{self.base_url}/embeddings", json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        items = sorted(data["data"], key=lambda item: item["index"])
        return [item["embedding"] for item in items]


def build_ticket_query_text(
    summary: str,
    entities: Sequence[str],
    facts: TicketFacts,
    agent_actions: AgentActions,
) -> str:
    """Combine the ticket context into the text embedded for rule retrieval."""
    parts: List[str] = []
    if summary:
        parts.append(summary)
    if entities:
        parts.append("Key entities: " + ", ".join(entities))

    fact_parts = []
    for key, value in facts.model_dump(exclude={"custom"}).items():
        if not value or value == "unknown":
            continue
        if isinstance(value, list):
            value = ", ".join(value)
        fact_parts.append(f"{key}: {value}")
    if fact_parts:
        parts.append("Facts: " + ", ".join(fact_parts))

    if agent_actions.macros_used:
        parts.append("Macros: " + ", ".join(agent_actions.macros_used))
    if agent_actions.links_sent:
        parts.append(f"Links sent: {len(agent_actions.links_sent)}")

    return "\n".join(parts).strip()


def _normalize(vector: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]
