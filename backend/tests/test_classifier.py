from ticket_audit.schemas.ticket import TicketFacts
from ticket_audit.services.classifier import classify_ticket


def test_withdrawal_summary_is_payments():
    result = classify_ticket("Customer asked why their withdraw request is still pending.")
    assert result.category == "Payments"
    assert result.subcategory == "Withdrawals"
    assert result.risk_level == "high"
    assert "withdraw" in result.key_entities
    assert "withdrawals" in result.mandatory_tags


def test_first_matching_category_wins():
    # mentions both a password and self-exclusion; responsible gambling is checked first
    result = classify_ticket("User on self-exclusion asked to reset password to reactivate.")
    assert result.category == "Responsible Gambling"
    assert result.subcategory == "Self-Exclusion"
    assert result.risk_level == "critical"


def test_unmatched_summary_defaults():
    result = classify_ticket("Customer said hello.")
    assert result.category == "General Support"
    assert result.subcategory is None
    assert result.risk_level == "medium"
    assert result.mandatory_tags == []


def test_facts_raise_risk_and_add_tags():
    facts = TicketFacts(account_auth_method="google", region_flags=["ON"])
    result = classify_ticket("Customer cannot log in.", facts)
    assert result.category == "Account Access"
    assert result.risk_level == "high"
    assert "social_login" in result.mandatory_tags
    assert "ontario" in result.mandatory_tags


def test_facts_never_lower_risk():
    facts = TicketFacts(account_restriction_state="self_excluded", region_flags=["ON"])
    result = classify_ticket("Customer wants a bonus code.", facts)
    assert result.category == "Bonuses"
    assert result.risk_level == "critical"


def test_regulator_flag_is_critical():
    result = classify_ticket("Customer asked about odds.", TicketFacts(risk_flags=["regulator_complaint"]))
    assert result.risk_level == "critical"


def test_tags_are_deduplicated():
    facts = TicketFacts(account_restriction_state="self_excluded")
    result = classify_ticket("Self-exclusion question", facts)
    assert len(result.mandatory_tags) == len(set(result.mandatory_tags))
