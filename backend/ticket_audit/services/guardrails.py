"""Deterministic compliance guardrails evaluated without any model call."""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from ticket_audit.schemas.evaluation import Evidence, Finding
from ticket_audit.schemas.ticket import AgentActions, TicketFacts, TranscriptMessage
from ticket_audit.services.transcript import normalize_speaker

logger = logging.getLogger(__name__)

SOCIAL_AUTH_METHODS = ("google", "apple", "facebook")


class GuardrailRegistrationError(ValueError):
    """Raised when a custom guardrail is malformed."""


@dataclass(frozen=True)
class GuardrailResult:
    triggered: bool
    finding: Optional[Finding] = None


NOT_TRIGGERED = GuardrailResult(triggered=False)

GuardrailCheck = Callable[[TicketFacts, List[TranscriptMessage], AgentActions], GuardrailResult]


@dataclass(frozen=True)
class GuardrailRule:
    id: str
    name: str
    description: str
    severity: str
    applies: Callable[[TicketFacts], bool]
    check: GuardrailCheck


def _agent_messages(transcript: Sequence[TranscriptMessage]) -> List[TranscriptMessage]:
    return [m for m in transcript if normalize_speaker(m.speaker) == "agent"]


def _agent_text(transcript: Sequence[TranscriptMessage]) -> str:
    return " ".join(m.text.lower() for m in _agent_messages(transcript))


def _evidence(messages: Iterable[TranscriptMessage], phrases: Sequence[str], limit: int) -> List[Evidence]:
    matching = [m for m in messages if any(p in m.text.lower() for p in phrases)]
    return [
        Evidence(message_id=m.message_id, speaker="agent", excerpt=m.text[:200], timestamp=m.timestamp)
        for m in matching[:limit]
    ]


PASSWORD_RESET_PHRASES = (
    "reset your password",
    "reset link",
    "password reset",
    "forgot password link",
    "change your password",
    "/reset-password",
    "/forgot-password",
)


def _has_no_password(facts: TicketFacts) -> bool:
    return facts.has_password == "false" or facts.account_auth_method in SOCIAL_AUTH_METHODS


def check_password_reset_for_social_login(
    facts: TicketFacts, transcript: List[TranscriptMessage], actions: AgentActions
) -> GuardrailResult:
    if not _has_no_password(facts):
        return NOT_TRIGGERED

    agent_text = _agent_text(transcript)
    links = " ".join(link.lower() for link in actions.links_sent)
    if not any(p in agent_text or p in links for p in PASSWORD_RESET_PHRASES):
        return NOT_TRIGGERED

    method = facts.account_auth_method if facts.account_auth_method != "unknown" else "social"
    return GuardrailResult(
        triggered=True,
        finding=Finding(
            type="violation",
            severity="critical",
            rule_id="GR_NO_PASSWORD_RESET_LINK",
            rule_title="No Password Reset for Social Login",
            explanation=(
                f"Agent sent password reset instructions or a reset link, but the customer signs in "
                f"with {method} login and has no password."
            ),
            recommended_fix=(
                "Explain that the account uses social login and route the customer to the "
                "account access procedure for that provider."
            ),
            ticket_evidence=_evidence(_agent_messages(transcript), PASSWORD_RESET_PHRASES, 3),
        ),
    )


GAMBLING_PHRASES = (
    "place a bet",
    "bonus",
    "free spins",
    "deposit bonus",
    "casino",
    "slots",
    "betting tips",
    "odds",
    "wager",
    "gambling",
    "play now",
)


def check_self_excluded_gambling_advice(
    facts: TicketFacts, transcript: List[TranscriptMessage], actions: AgentActions
) -> GuardrailResult:
    if facts.account_restriction_state != "self_excluded":
        return NOT_TRIGGERED

    agent_text = _agent_text(transcript)
    found = next((term for term in GAMBLING_PHRASES if term in agent_text), None)
    if found is None:
        return NOT_TRIGGERED

    return GuardrailResult(
        triggered=True,
        finding=Finding(
            type="violation",
            severity="critical",
            rule_id="GR_SELF_EXCLUDED_GAMBLING_ADVICE",
            rule_title="No Gambling Advice for Self-Excluded",
            explanation=(
                f'Agent used gambling terminology ("{found}") with a self-excluded customer. '
                "This is a critical error and a potential regulatory breach."
            ),
            recommended_fix=(
                "Never offer gambling advice, bonuses or promotions to self-excluded customers. "
                "Point them to responsible gambling resources where appropriate."
            ),
            ticket_evidence=_evidence(_agent_messages(transcript), GAMBLING_PHRASES, 3),
        ),
    )


ONTARIO_RESTRICTED_PHRASES = (
    "inducement",
    "free bet",
    "no deposit bonus",
    "promotional credit",
    "bonus rollover waive",
)


def check_ontario_restrictions(
    facts: TicketFacts, transcript: List[TranscriptMessage], actions: AgentActions
) -> GuardrailResult:
    if "ON" not in facts.region_flags:
        return NOT_TRIGGERED

    agent_text = _agent_text(transcript)
    found = next((term for term in ONTARIO_RESTRICTED_PHRASES if term in agent_text), None)
    if found is None:
        return NOT_TRIGGERED

    return GuardrailResult(
        triggered=True,
        finding=Finding(
            type="violation",
            severity="high",
            rule_id="GR_REGION_ON_RESTRICTIONS",
            rule_title="Ontario Region Restrictions",
            explanation=f'Agent offered "{found}" to an Ontario customer, which Ontario regulation prohibits.',
            recommended_fix=(
                "Check Ontario-specific restrictions before offering bonuses or promotions; "
                "certain inducements are not allowed for Ontario customers."
            ),
            ticket_evidence=_evidence(_agent_messages(transcript), ONTARIO_RESTRICTED_PHRASES, 2),
        ),
    )


WITHDRAWAL_PHRASES = ("withdraw", "cash out")
RESUBMISSION_PHRASES = ("resubmit", "upload again", "new document", "verification rejected")


def check_kyc_rejected_withdrawal(
    facts: TicketFacts, transcript: List[TranscriptMessage], actions: AgentActions
) -> GuardrailResult:
    if facts.kyc_state != "rejected":
        return NOT_TRIGGERED

    withdrawal_mentioned = any(
        any(p in m.text.lower() for p in WITHDRAWAL_PHRASES) for m in transcript
    )
    if not withdrawal_mentioned:
        return NOT_TRIGGERED

    agent_text = _agent_text(transcript)
    if any(p in agent_text for p in RESUBMISSION_PHRASES):
        return NOT_TRIGGERED

    return GuardrailResult(
        triggered=True,
        finding=Finding(
            type="potential_violation",
            severity="high",
            rule_id="GR_KYC_REJECTED_WITHDRAWAL",
            rule_title="KYC Rejected Withdrawal Handling",
            explanation=(
                "Customer has a rejected KYC and asked about a withdrawal, but the agent did not "
                "clearly explain that documents must be resubmitted."
            ),
            recommended_fix="Explain why KYC was rejected and which documents need to be uploaded again.",
            verification_needed=True,
            what_to_verify="Check whether the agent explained the KYC resubmission procedure elsewhere.",
            why_uncertain="The explanation may sit in a part of the conversation this check does not see.",
        ),
    )


COOLING_OFF_PHRASES = (
    "can help you with",
    "let me check your",
    "your balance",
    "your bets",
    "active promotions",
)


def check_cooling_off_period(
    facts: TicketFacts, transcript: List[TranscriptMessage], actions: AgentActions
) -> GuardrailResult:
    if facts.account_restriction_state != "cooling_off":
        return NOT_TRIGGERED

    agent_text = _agent_text(transcript)
    found = next((term for term in COOLING_OFF_PHRASES if term in agent_text), None)
    if found is None:
        return NOT_TRIGGERED

    return GuardrailResult(
        triggered=True,
        finding=Finding(
            type="potential_violation",
            severity="high",
            rule_id="GR_COOLING_OFF_PERIOD",
            rule_title="Cooling Off Period Handling",
            explanation=(
                f'Agent offered help with gaming features ("{found}") to a customer in a cooling-off period.'
            ),
            recommended_fix=(
                "During cooling-off, limit help to responsible gambling support and necessary account management."
            ),
            verification_needed=True,
            what_to_verify="Check whether the customer asked about account status or the cooling-off end date.",
            why_uncertain="Some account questions are allowed during a cooling-off period.",
        ),
    )


DEFAULT_GUARDRAILS = (
    GuardrailRule(
        id="GR_NO_PASSWORD_RESET_LINK",
        name="No Password Reset for Social Login",
        description="Agent must not send a password reset link to a customer without a password.",
        severity="critical",
        applies=_has_no_password,
        check=check_password_reset_for_social_login,
    ),
    GuardrailRule(
        id="GR_SELF_EXCLUDED_GAMBLING_ADVICE",
        name="No Gambling Advice for Self-Excluded",
        description="Agent must not discuss wagering or bonuses with a self-excluded customer.",
        severity="critical",
        applies=lambda f: f.account_restriction_state == "self_excluded",
        check=check_self_excluded_gambling_advice,
    ),
    GuardrailRule(
        id="GR_COOLING_OFF_PERIOD",
        name="Cooling Off Period Handling",
        description="Agent must not help with gaming features during a cooling-off period.",
        severity="high",
        applies=lambda f: f.account_restriction_state == "cooling_off",
        check=check_cooling_off_period,
    ),
    GuardrailRule(
        id="GR_REGION_ON_RESTRICTIONS",
        name="Ontario Region Restrictions",
        description="Agent must respect Ontario inducement restrictions.",
        severity="high",
        applies=lambda f: "ON" in f.region_flags,
        check=check_ontario_restrictions,
    ),
    GuardrailRule(
        id="GR_KYC_REJECTED_WITHDRAWAL",
        name="KYC Rejected Withdrawal Handling",
        description="Withdrawal questions with a rejected KYC require a resubmission explanation.",
        severity="high",
        applies=lambda f: f.kyc_state == "rejected",
        check=check_kyc_rejected_withdrawal,
    ),
)


class GuardrailEngine:
    """Registry of guardrail rules keyed by id, in registration order."""

    def __init__(self, rules: Iterable[GuardrailRule] = DEFAULT_GUARDRAILS) -> None:
        self._rules: Dict[str, GuardrailRule] = {}
        for rule in rules:
            self.add_custom_guardrail(rule)

    def add_custom_guardrail(self, rule: GuardrailRule) -> None:
        """Register a rule, replacing any existing rule with the same id."""
        if not rule.id or not callable(rule.check) or not callable(rule.applies):
            raise GuardrailRegistrationError("Invalid guardrail rule format")
        self._rules[rule.id] = rule

    def list_guardrails(self) -> List[Dict[str, str]]:
        return [
            {"id": r.id, "name": r.name, "description": r.description, "severity": r.severity}
            for r in self._rules.values()
        ]

    def get_relevant_guardrails(self, ticket_facts: TicketFacts) -> List[str]:
        relevant = []
        for rule in self._rules.values():
            try:
                if rule.applies(ticket_facts):
                    relevant.append(rule.id)
            except Exception:
                logger.exception("Guardrail precondition failed", extra={"guardrail_id": rule.id})
        return relevant

    def run_guardrails_by_ids(
        self,
        rule_ids: Iterable[str],
        ticket_facts: TicketFacts,
        transcript: List[TranscriptMessage],
        agent_actions: Optional[AgentActions] = None,
    ) -> List[Finding]:
        actions = agent_actions or AgentActions()
        findings: List[Finding] = []
        for rule_id in rule_ids:
            rule = self._rules.get(rule_id)
            if rule is None:
                continue
            try:
                result = rule.check(ticket_facts, transcript, actions)
            except Exception:
                # a broken predicate counts as not triggered
                logger.exception("Guardrail check failed", extra={"guardrail_id": rule.id})
                continue
            if result.triggered and result.finding is not None:
                findings.append(
                    result.finding.model_copy(update={"guardrail_id": rule.id, "guardrail_name": rule.name})
                )
        return findings

    def run_all_guardrails(
        self,
        ticket_facts: TicketFacts,
        transcript: List[TranscriptMessage],
        agent_actions: Optional[AgentActions] = None,
    ) -> List[Finding]:
        return self.run_guardrails_by_ids(list(self._rules), ticket_facts, transcript, agent_actions)

    def quick_guardrail_check(
        self,
        ticket_facts: TicketFacts,
        transcript: List[TranscriptMessage],
        agent_actions: Optional[AgentActions] = None,
    ) -> List[Finding]:
        """Run only the guardrails whose preconditions match the ticket facts."""
        relevant_ids = self.get_relevant_guardrails(ticket_facts)
        if not relevant_ids:
            return []
        findings = self.run_guardrails_by_ids(relevant_ids, ticket_facts, transcript, agent_actions)
        logger.debug(
            "Guardrail check complete",
            extra={"relevant": relevant_ids, "triggered": [f.rule_id for f in findings]},
        )
        return findings
