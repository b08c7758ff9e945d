import pytest

from ticket_audit.schemas.ticket import AgentActions, TicketFacts, TranscriptMessage, full_conversation
from ticket_audit.services.guardrails import (
    DEFAULT_GUARDRAILS,
    NOT_TRIGGERED,
    GuardrailEngine,
    GuardrailRegistrationError,
    GuardrailResult,
    GuardrailRule,
)
from ticket_audit.schemas.evaluation import Finding


def _messages(*pairs):
    return [TranscriptMessage(message_id=f"m{i}", speaker=s, text=t) for i, (s, t) in enumerate(pairs)]


def test_self_excluded_bonus_mention_is_one_critical_violation():
    engine = GuardrailEngine()
    facts = TicketFacts(account_restriction_state="self_excluded")
    transcript = _messages(
        ("user", "Can I get back into my account?"),
        ("agent", "Sure, and we have a great deposit bonus for you this week."),
    )

    findings = engine.quick_guardrail_check(facts, transcript)

    assert len(findings) == 1
    finding = findings[0]
    assert finding.rule_id == "GR_SELF_EXCLUDED_GAMBLING_ADVICE"
    assert finding.type == "violation"
    assert finding.severity == "critical"
    assert finding.guardrail_id == "GR_SELF_EXCLUDED_GAMBLING_ADVICE"
    assert finding.ticket_evidence[0].message_id == "m1"


def test_user_text_does_not_trigger_agent_guardrails():
    engine = GuardrailEngine()
    facts = TicketFacts(account_restriction_state="self_excluded")
    transcript = _messages(("user", "I want my bonus back"), ("agent", "Your account is self-excluded until June."))
    assert engine.quick_guardrail_check(facts, transcript) == []


def test_free_form_agent_label_counts_as_agent():
    engine = GuardrailEngine()
    facts = TicketFacts(account_auth_method="google")
    transcript = _messages(
        ("player123", "I forgot my password"),
        ("Jane from Stake.com", "No problem, here is a reset link: https://example.com/reset-password"),
    )
    findings = engine.quick_guardrail_check(facts, transcript)
    assert [f.rule_id for f in findings] == ["GR_NO_PASSWORD_RESET_LINK"]
    assert "google" in findings[0].explanation


def test_password_reset_link_in_agent_actions():
    engine = GuardrailEngine()
    facts = TicketFacts(has_password="false")
    transcript = _messages(("agent", "I have sent you something by email."))
    actions = AgentActions(links_sent=["https://example.com/forgot-password?token=x"])
    findings = engine.quick_guardrail_check(facts, transcript, actions)
    assert findings[0].rule_id == "GR_NO_PASSWORD_RESET_LINK"


def test_kyc_rejected_withdrawal_without_resubmission_is_potential():
    engine = GuardrailEngine()
    facts = TicketFacts(kyc_state="rejected")
    transcript = _messages(("user", "Why can't I withdraw?"), ("agent", "Please wait a few days."))
    findings = engine.quick_guardrail_check(facts, transcript)
    assert len(findings) == 1
    assert findings[0].type == "potential_violation"
    assert findings[0].verification_needed is True

    explained = _messages(("user", "Why can't I withdraw?"), ("agent", "Please resubmit your passport."))
    assert engine.quick_guardrail_check(facts, explained) == []


def test_relevant_guardrails_follow_facts():
    engine = GuardrailEngine()
    facts = TicketFacts(account_restriction_state="cooling_off", region_flags=["ON"])
    assert engine.get_relevant_guardrails(facts) == ["GR_COOLING_OFF_PERIOD", "GR_REGION_ON_RESTRICTIONS"]
    assert engine.get_relevant_guardrails(TicketFacts()) == []


def test_full_conversation_blob_is_not_scanned():
    engine = GuardrailEngine()
    facts = TicketFacts(region_flags=["ON"])
    transcript = full_conversation("10:01 | Agent Sam: here is a free bet for you")
    assert engine.run_all_guardrails(facts, transcript) == []


def test_broken_guardrail_is_skipped(caplog):
    def explode(facts, transcript, actions):
        raise RuntimeError("boom")

    broken = GuardrailRule(
        id="GR_BROKEN",
        name="Broken",
        description="Always raises",
        severity="high",
        applies=lambda f: True,
        check=explode,
    )
    engine = GuardrailEngine([broken, *DEFAULT_GUARDRAILS])
    facts = TicketFacts(account_restriction_state="self_excluded")
    transcript = _messages(("agent", "Try our free spins"))

    findings = engine.quick_guardrail_check(facts, transcript)

    assert [f.rule_id for f in findings] == ["GR_SELF_EXCLUDED_GAMBLING_ADVICE"]
    assert any(r.getMessage() == "Guardrail check failed" for r in caplog.records)


def test_custom_guardrail_replaces_by_id():
    def flag_everything(facts, transcript, actions):
        return GuardrailResult(
            triggered=True,
            finding=Finding(type="note", severity="low", rule_id="GR_CUSTOM", explanation="custom"),
        )

    engine = GuardrailEngine()
    before = len(engine.list_guardrails())
    engine.add_custom_guardrail(
        GuardrailRule("GR_CUSTOM", "Custom", "First", "low", lambda f: True, lambda *a: NOT_TRIGGERED)
    )
    engine.add_custom_guardrail(GuardrailRule("GR_CUSTOM", "Custom", "Second", "low", lambda f: True, flag_everything))

    listed = {g["id"]: g for g in engine.list_guardrails()}
    assert len(listed) == before + 1
    assert listed["GR_CUSTOM"]["description"] == "Second"
    findings = engine.run_guardrails_by_ids(["GR_CUSTOM", "GR_MISSING"], TicketFacts(), [])
    assert [f.rule_id for f in findings] == ["GR_CUSTOM"]


def test_invalid_custom_guardrail_rejected():
    engine = GuardrailEngine()
    with pytest.raises(GuardrailRegistrationError):
        engine.add_custom_guardrail(GuardrailRule("", "Nameless", "", "low", lambda f: True, lambda *a: NOT_TRIGGERED))
