import json
import math
from dataclasses import dataclass
from hashlib import sha256
from pathlib import Path
from typing import Iterable, List

from ticket_audit.schemas.rules import ChunkMetadata, RuleDocument, SourceLocation

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class RuleChunkDraft:
    chunk_id: str
    rule_id: str
    chunk_index: int
    text: str
    token_count: int
    metadata: ChunkMetadata


def load_rule_documents(corpus_path: Path) -> List[RuleDocument]:
    """Load rule documents from ``*.json`` files (one rule or a list of rules per file)."""
    if not corpus_path.exists():
        return []

    documents: List[RuleDocument] = []
    for path in sorted(corpus_path.glob("**/*.json")):
        raw = json.loads(path.read_text(encoding="utf-8"))
        items = raw if isinstance(raw, list) else [raw]
        for item in items:
            document = RuleDocument.model_validate(item)
            if document.source_location is None:
                document = document.model_copy(update={"source_location": SourceLocation(source_name=path.name)})
            documents.append(document)
    return documents


def build_embedding_input(rule: RuleDocument) -> str:
    """Flatten a rule into the text that represents it in the vector space."""
    parts = [f"Title: {rule.title}"]
    if rule.intent:
        parts.append(f"Intent: {rule.intent}")
    parts.append(f"Rule: {rule.rule_text}")

    if rule.steps:
        parts.append("Steps: " + ". ".join(step.action for step in rule.steps))

    if rule.conditions:
        rendered = []
        for condition in rule.conditions:
            clauses = " AND ".join(f"{c.field} {c.operator} {c.value}" for c in condition.if_)
            rendered.append(f"If {clauses} then {condition.then}")
        parts.append("Conditions: " + ". ".join(rendered))

    if rule.exceptions:
        parts.append("Exceptions: " + ". ".join(e.description for e in rule.exceptions))
    if rule.examples_good:
        parts.append("Good examples: " + ". ".join(rule.examples_good))
    if rule.examples_bad:
        parts.append("Bad examples: " + ". ".join(rule.examples_bad))
    if rule.tags:
        parts.append("Tags: " + ", ".join(rule.tags))

    return "\n".join(parts)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def chunk_rule_document(
    rule: RuleDocument,
    max_chars: int = 2000,
    overlap_chars: int = 200,
) -> List[RuleChunkDraft]:
    """Chunk a rule into stable, retrieval-sized slices."""
    metadata = ChunkMetadata(
        category_id=rule.category_id,
        category_name=rule.category_name or None,
        subcategory=rule.subcategory or None,
        tags=list(rule.tags),
        severity=rule.severity_default,
        source_location=rule.source_location,
    )
    drafts: List[RuleChunkDraft] = []
    for chunk_index, text in enumerate(_chunk_text(build_embedding_input(rule), max_chars, overlap_chars)):
        drafts.append(
            RuleChunkDraft(
                chunk_id=_stable_chunk_id(rule.rule_id, chunk_index, text),
                rule_id=rule.rule_id,
                chunk_index=chunk_index,
                text=text,
                token_count=estimate_tokens(text),
                metadata=metadata,
            )
        )
    return drafts


def _chunk_text(text: str, max_chars: int, overlap_chars: int) -> Iterable[str]:
    if len(text) <= max_chars:
        yield text
        return

    start = 0
    while start < len(text):
        end = min(start + max_chars, len(text))
        yield text[start:end].strip()
        if end == len(text):
            break
        start = max(0, end - overlap_chars)


def _stable_chunk_id(rule_id: str, chunk_index: int, text: str) -> str:
    digest = sha256(f"{rule_id}||{chunk_index}||{text}".encode("utf-8")).hexdigest()
    return f"{rule_id}_{chunk_index}_{digest[:12]}"
