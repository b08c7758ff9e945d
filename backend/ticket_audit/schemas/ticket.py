from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

FULL_CONVERSATION_ID = "full_conversation"

TriState = Literal["true", "false", "unknown"]


class TranscriptMessage(BaseModel):
    message_id: Optional[str] = None
    speaker: str = "user"
    text: str = ""
    timestamp: Optional[datetime] = None


class TicketFacts(BaseModel):
    """Account state snapshot from the system of record. Unavailable fields stay ``unknown``."""

    account_auth_method: Literal["email_password", "google", "apple", "facebook", "unknown"] = "unknown"
    has_password: TriState = "unknown"
    email_verified: TriState = "unknown"
    phone_verified: TriState = "unknown"
    two_fa_enabled: TriState = "unknown"
    account_restriction_state: Literal[
        "none", "self_excluded", "cooling_off", "limited", "suspended", "unknown"
    ] = "unknown"
    region_flags: List[str] = Field(default_factory=list)
    kyc_state: Literal["none", "pending", "verified", "rejected", "unknown"] = "unknown"
    withdrawal_state: Literal["none", "pending", "reversed", "failed", "unknown"] = "unknown"
    payment_method_type: Literal["crypto", "card", "bank", "unknown"] = "unknown"
    device_context: Literal["web", "android", "ios", "unknown"] = "unknown"
    risk_flags: List[str] = Field(default_factory=list)
    internal_checks_available: List[str] = Field(default_factory=list)
    custom: Dict[str, Any] = Field(default_factory=dict)


class AgentActions(BaseModel):
    macros_used: List[str] = Field(default_factory=list)
    links_sent: List[str] = Field(default_factory=list)
    tags_applied: List[str] = Field(default_factory=list)
    internal_checks_performed: List[str] = Field(default_factory=list)


def full_conversation(text: str) -> List[TranscriptMessage]:
    """Wrap a raw merged conversation export as a single-message transcript."""
    return [TranscriptMessage(message_id=FULL_CONVERSATION_ID, speaker="system", text=text)]


def is_full_conversation(transcript: List[TranscriptMessage]) -> bool:
    return len(transcript) == 1 and transcript[0].message_id == FULL_CONVERSATION_ID
