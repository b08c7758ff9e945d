import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from ticket_audit.llm.pricing import calculate_cost
from ticket_audit.schemas.evaluation import TicketEvaluation

logger = logging.getLogger(__name__)

FILTER_COLUMNS = ("session_id", "agent_id", "category", "overall_status", "qa_status", "ticket_id")

EMPTY_SESSION_STATS: Dict[str, Any] = {
    "total": 0,
    "pass": 0,
    "fail": 0,
    "needs_review": 0,
    "total_violations": 0,
    "total_potential": 0,
    "avg_confidence": 0.0,
    "total_tokens": 0,
    "total_cost": 0.0,
    "avg_duration_ms": 0.0,
}


class EvaluationNotFoundError(KeyError):
    """Raised when an evaluation_id is not found."""


class EvaluationStore:
    """SQLite-backed persistence for ticket evaluations."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS evaluations (
                    evaluation_id TEXT PRIMARY KEY,
                    ticket_id TEXT NOT NULL,
                    session_id TEXT,
                    agent_id TEXT,
                    category TEXT,
                    overall_status TEXT NOT NULL,
                    qa_status TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_eval_session ON evaluations(session_id, overall_status)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_eval_agent ON evaluations(agent_id, overall_status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_eval_qa ON evaluations(qa_status)")

    def _insert(self, evaluation: TicketEvaluation) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO evaluations
                (evaluation_id, ticket_id, session_id, agent_id, category, overall_status, qa_status, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    evaluation.evaluation_id,
                    evaluation.ticket_id,
                    evaluation.session_id,
                    evaluation.agent_id,
                    evaluation.category,
                    evaluation.overall_status,
                    evaluation.qa_status,
                    evaluation.model_dump_json(),
                ),
            )

    def _get(self, evaluation_id: str) -> TicketEvaluation:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT payload FROM evaluations WHERE evaluation_id = ?", (evaluation_id,)
            ).fetchone()
        if row is None:
            raise EvaluationNotFoundError(evaluation_id)
        return TicketEvaluation.model_validate_json(row[0])

    def _delete(self, evaluation_id: str) -> None:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM evaluations WHERE evaluation_id = ?", (evaluation_id,))
        if cursor.rowcount == 0:
            raise EvaluationNotFoundError(evaluation_id)

    def _list(self, filters: Dict[str, Any], limit: int, offset: int) -> List[TicketEvaluation]:
        clauses = []
        params: List[Any] = []
        for column, value in filters.items():
            if column not in FILTER_COLUMNS:
                raise ValueError(f"Unsupported filter: {column}")
            if value is None:
                continue
            clauses.append(f"{column} = ?")
            params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT payload FROM evaluations {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
        return [TicketEvaluation.model_validate_json(row[0]) for row in rows]

    def _update_qa_status(self, evaluation_id: str, qa_status: str, qa_notes: Optional[str]) -> TicketEvaluation:
        evaluation = self._get(evaluation_id)
        updated = TicketEvaluation.model_validate(
            {**evaluation.model_dump(), "qa_status": qa_status, "qa_notes": qa_notes}
        )
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "UPDATE evaluations SET qa_status = ?, payload = ? WHERE evaluation_id = ?",
                (updated.qa_status, updated.model_dump_json(), evaluation_id),
            )
        return updated

    async def create(self, evaluation: TicketEvaluation) -> TicketEvaluation:
        await asyncio.to_thread(self._insert, evaluation)
        logger.debug(
            "Stored evaluation",
            extra={"evaluation_id": evaluation.evaluation_id, "ticket_id": evaluation.ticket_id},
        )
        return evaluation

    async def get(self, evaluation_id: str) -> TicketEvaluation:
        return await asyncio.to_thread(self._get, evaluation_id)

    async def delete(self, evaluation_id: str) -> None:
        await asyncio.to_thread(self._delete, evaluation_id)

    async def list_evaluations(
        self,
        session_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        category: Optional[str] = None,
        overall_status: Optional[str] = None,
        qa_status: Optional[str] = None,
        ticket_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[TicketEvaluation]:
        filters = {
            "session_id": session_id,
            "agent_id": agent_id,
            "category": category,
            "overall_status": overall_status,
            "qa_status": qa_status,
            "ticket_id": ticket_id,
        }
        return await asyncio.to_thread(self._list, filters, limit, offset)

    async def update_qa_status(
        self, evaluation_id: str, qa_status: str, qa_notes: Optional[str] = None
    ) -> TicketEvaluation:
        """Move an evaluation through the QA workflow; the verdict itself is never edited."""
        return await asyncio.to_thread(self._update_qa_status, evaluation_id, qa_status, qa_notes)

    async def session_frame(self, session_id: str) -> pd.DataFrame:
        evaluations = await self.list_evaluations(session_id=session_id, limit=-1)
        return evaluations_frame(evaluations)

    async def session_stats(self, session_id: str) -> Dict[str, Any]:
        return session_stats(await self.session_frame(session_id))

    async def category_breakdown(self, session_id: str) -> List[Dict[str, Any]]:
        return category_breakdown(await self.session_frame(session_id))


def evaluations_frame(evaluations: List[TicketEvaluation]) -> pd.DataFrame:
    """Flatten evaluations into one row per record for aggregation."""
    rows = []
    for evaluation in evaluations:
        summary = evaluation.findings_summary
        usage = evaluation.token_usage
        rows.append(
            {
                "evaluation_id": evaluation.evaluation_id,
                "category": evaluation.category,
                "overall_status": evaluation.overall_status,
                "confidence": evaluation.confidence,
                "violations": summary.violations,
                "potential_violations": summary.potential_violations,
                "model_used": evaluation.model_used,
                "prompt_tokens": usage.prompt_tokens,
                "cached_tokens": usage.cached_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens,
                "duration_ms": evaluation.evaluation_duration_ms,
            }
        )
    return pd.DataFrame(rows)


def session_stats(frame: pd.DataFrame) -> Dict[str, Any]:
    if frame.empty:
        return dict(EMPTY_SESSION_STATS)

    status_counts = frame["overall_status"].value_counts()
    per_model = frame.groupby("model_used")[["prompt_tokens", "cached_tokens", "completion_tokens"]].sum()
    total_cost = sum(
        calculate_cost(
            model,
            int(row["prompt_tokens"]),
            int(row["cached_tokens"]),
            int(row["completion_tokens"]),
        )
        for model, row in per_model.iterrows()
    )
    durations = pd.to_numeric(frame["duration_ms"], errors="coerce").dropna()
    return {
        "total": int(len(frame)),
        "pass": int(status_counts.get("pass", 0)),
        "fail": int(status_counts.get("fail", 0)),
        "needs_review": int(status_counts.get("needs_review", 0)),
        "total_violations": int(frame["violations"].sum()),
        "total_potential": int(frame["potential_violations"].sum()),
        "avg_confidence": float(frame["confidence"].mean()),
        "total_tokens": int(frame["total_tokens"].sum()),
        "total_cost": float(total_cost),
        "avg_duration_ms": float(durations.mean()) if not durations.empty else 0.0,
    }


def category_breakdown(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    if frame.empty:
        return []
    frame = frame.assign(
        category=frame["category"].fillna("Uncategorized"),
        is_pass=frame["overall_status"] == "pass",
        is_fail=frame["overall_status"] == "fail",
    )
    grouped = (
        frame.groupby("category")
        .agg(count=("evaluation_id", "size"), passed=("is_pass", "sum"), failed=("is_fail", "sum"))
        .reset_index()
        .sort_values(by=["count", "category"], ascending=[False, True])
    )
    return [
        {
            "category": row["category"],
            "count": int(row["count"]),
            "pass": int(row["passed"]),
            "fail": int(row["failed"]),
        }
        for _, row in grouped.iterrows()
    ]
