"""Keyword and fact driven ticket triage.

Categories are tried in table order and the first whose keywords appear in
the summary wins. Within a category every matching refinement contributes
tags; the last matching refinement with a subcategory names it. Fact rules
then add tags and can only raise the risk level.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from ticket_audit.schemas.evaluation import Classification
from ticket_audit.schemas.ticket import TicketFacts

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "General Support"

RISK_RANK = {"low": 1, "medium": 2, "high": 3, "critical": 4}


@dataclass(frozen=True)
class Refinement:
    keywords: Tuple[str, ...]
    tags: Tuple[str, ...]
    subcategory: Optional[str] = None


@dataclass(frozen=True)
class CategoryRule:
    category: str
    risk_level: str
    keywords: Tuple[str, ...]
    tags: Tuple[str, ...]
    refinements: Tuple[Refinement, ...] = ()


@dataclass(frozen=True)
class FactRule:
    name: str
    predicate: Callable[[TicketFacts], bool]
    tags: Tuple[str, ...]
    risk_level: Optional[str] = None


CATEGORY_RULES: Tuple[CategoryRule, ...] = (
    CategoryRule(
        category="Responsible Gambling",
        risk_level="critical",
        keywords=(
            "self-exclu", "self exclu", "exclusion", "return to play", "reactivate", "cool off",
            "cooloff", "timeout", "gambling problem", "addiction", "deposit limit", "loss limit",
            "wager limit", "session limit",
        ),
        tags=("responsible_gambling",),
        refinements=(
            Refinement(("self-exclu", "self exclu", "exclusion"), ("rg_self_exclusion",), "Self-Exclusion"),
            Refinement(("return to play", "reactivate", "lift"), ("rg_return_to_play", "account_reactivation")),
            Refinement(("cool", "timeout"), ("rg_cooling_off",), "Cooling Off"),
            Refinement(("limit",), ("rg_limits",), "Limits"),
        ),
    ),
    CategoryRule(
        category="Payments",
        risk_level="high",
        keywords=(
            "withdraw", "deposit", "payment", "transaction", "crypto", "bitcoin", "balance",
            "transfer", "interac", "gigadat", "e-transfer", "etransfer",
        ),
        tags=("payments",),
        refinements=(
            Refinement(("withdraw",), ("withdrawals",), "Withdrawals"),
            Refinement(
                ("deposit", "not reflected", "missing", "didn't receive"),
                ("deposits", "deposit_issues"),
                "Deposits",
            ),
            Refinement(("interac", "gigadat", "e-transfer"), ("interac", "cad_payments")),
        ),
    ),
    CategoryRule(
        category="Account Access",
        risk_level="medium",
        keywords=(
            "password", "login", "access", "recover", "activate", "2fa", "authenticat",
            "locked out", "can't log", "cannot log",
        ),
        tags=("account_access",),
        refinements=(
            Refinement(("recover", "lost"), ("account_recovery",), "Account Recovery"),
            Refinement(("2fa", "authenticat", "google auth"), ("two_factor_auth",), "2FA"),
            Refinement(("password",), ("password_reset",), "Password"),
        ),
    ),
    CategoryRule(
        category="KYC",
        risk_level="high",
        keywords=(
            "kyc", "verification", "document", "identity", "selfie", "passport", "id card", "proof of",
        ),
        tags=("kyc", "verification"),
    ),
    CategoryRule(
        category="Bonuses",
        risk_level="medium",
        keywords=("bonus", "promotion", "reward", "rakeback", "vip", "cashback", "free spin", "code"),
        tags=("bonuses",),
    ),
    CategoryRule(
        category="Betting",
        risk_level="medium",
        keywords=("bet", "casino", "slot", "game", "wager", "odds", "sports", "live dealer"),
        tags=("betting",),
    ),
)

FACT_RULES: Tuple[FactRule, ...] = (
    FactRule(
        name="restricted_account",
        predicate=lambda f: f.account_restriction_state in ("self_excluded", "cooling_off"),
        tags=("rg_self_exclusion", "responsible_gambling"),
        risk_level="critical",
    ),
    FactRule(
        name="social_login",
        predicate=lambda f: f.account_auth_method in ("google", "apple", "facebook"),
        tags=("social_login",),
    ),
    FactRule(
        name="ontario",
        predicate=lambda f: "ON" in f.region_flags,
        tags=("ontario", "regulated_jurisdiction"),
        risk_level="high",
    ),
    FactRule(
        name="regulator_flagged",
        predicate=lambda f: any("regulator" in flag.lower() for flag in f.risk_flags),
        tags=("regulated_jurisdiction",),
        risk_level="critical",
    ),
)


@dataclass
class _Triage:
    category: str = DEFAULT_CATEGORY
    subcategory: Optional[str] = None
    risk_level: str = "medium"
    tags: List[str] = field(default_factory=list)
    entities: List[str] = field(default_factory=list)

    def raise_risk(self, level: str) -> None:
        if RISK_RANK[level] > RISK_RANK[self.risk_level]:
            self.risk_level = level


def _matches(text: str, keywords: Tuple[str, ...]) -> List[str]:
    return [keyword for keyword in keywords if keyword in text]


def classify_ticket(
    ticket_summary: Optional[str],
    ticket_facts: Optional[TicketFacts] = None,
    category_rules: Tuple[CategoryRule, ...] = CATEGORY_RULES,
    fact_rules: Tuple[FactRule, ...] = FACT_RULES,
) -> Classification:
    """Assign category, subcategory, risk level and mandatory retrieval tags."""
    text = (ticket_summary or "").lower()
    triage = _Triage()

    for rule in category_rules:
        hits = _matches(text, rule.keywords)
        if not hits:
            continue
        triage.category = rule.category
        triage.risk_level = rule.risk_level
        triage.tags.extend(rule.tags)
        triage.entities.extend(hits)
        for refinement in rule.refinements:
            refinement_hits = _matches(text, refinement.keywords)
            if not refinement_hits:
                continue
            if refinement.subcategory:
                triage.subcategory = refinement.subcategory
            triage.tags.extend(refinement.tags)
            triage.entities.extend(refinement_hits)
        break

    if ticket_facts is not None:
        for fact_rule in fact_rules:
            if not fact_rule.predicate(ticket_facts):
                continue
            triage.tags.extend(fact_rule.tags)
            if fact_rule.risk_level:
                triage.raise_risk(fact_rule.risk_level)

    classification = Classification(
        category=triage.category,
        subcategory=triage.subcategory,
        risk_level=triage.risk_level,
        key_entities=list(dict.fromkeys(triage.entities)),
        mandatory_tags=list(dict.fromkeys(triage.tags)),
    )
    logger.debug(
        "Classified ticket",
        extra={
            "category": classification.category,
            "subcategory": classification.subcategory,
            "risk_level": classification.risk_level,
            "mandatory_tags": classification.mandatory_tags,
        },
    )
    return classification
