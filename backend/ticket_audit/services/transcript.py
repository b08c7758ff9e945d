"""Transcript cleanup and rendering shared by the summarizer and evaluator."""
import re
from typing import Any, List, Sequence

from ticket_audit.schemas.ticket import TicketFacts, TranscriptMessage, is_full_conversation

BASE64_IMAGE_RE = re.compile(r"data:image/[^;]+;base64,[A-Za-z0-9+/=]+", re.IGNORECASE)
IMAGE_URL_RE = re.compile(r"https?://\S+\.(?:png|jpg|jpeg|gif|webp|svg)(?:\?\S*)?", re.IGNORECASE)
ATTACHMENT_RE = re.compile(r"\[attachment[^\]]*\]", re.IGNORECASE)
PLACEHOLDER_RE = re.compile(r"\[Image[^\]]*\]")
EXPORT_IMAGE_RE = re.compile(r'\[Image "[^"]+"\]')

MAX_FULL_CONVERSATION_CHARS = 15000

SPEAKER_LABELS = {"agent": "AGENT", "user": "USER", "system": "SYSTEM"}

AGENT_SPEAKER_HINTS = ("agent", "support", "from stake", "stake.com", "representative", "operator")
SYSTEM_SPEAKER_HINTS = ("system", "bot", "automated")


def normalize_speaker(speaker: Any) -> str:
    """Map a free-form speaker label onto user, agent or system."""
    if not speaker or not isinstance(speaker, str):
        return "user"
    lowered = speaker.lower().strip()
    if any(hint in lowered for hint in AGENT_SPEAKER_HINTS):
        return "agent"
    if any(hint in lowered for hint in SYSTEM_SPEAKER_HINTS):
        return "system"
    return "user"


def sanitize_transcript(transcript: Sequence[TranscriptMessage]) -> List[TranscriptMessage]:
    """Drop empty messages and replace inline image payloads with placeholders."""
    cleaned: List[TranscriptMessage] = []
    for message in transcript:
        if not message.text or not message.text.strip():
            continue

        text = BASE64_IMAGE_RE.sub("[Image]", message.text)
        text = IMAGE_URL_RE.sub(lambda m: f"[Image: {m.group(0)}]", text)
        text = ATTACHMENT_RE.sub("[Image Attachment]", text)

        if not PLACEHOLDER_RE.sub("", text).strip():
            text = "[User sent an image]"
        cleaned.append(message.model_copy(update={"text": text}))
    return cleaned


def transcript_text(transcript: Sequence[TranscriptMessage]) -> str:
    """Collapse a transcript to one text blob, ``[speaker]: text`` per message."""
    if is_full_conversation(list(transcript)):
        return EXPORT_IMAGE_RE.sub("[Image]", transcript[0].text or "")
    return "\n".join(f"[{m.speaker}]: {m.text}" for m in sanitize_transcript(transcript))


def format_transcript_for_prompt(transcript: Sequence[TranscriptMessage]) -> str:
    if is_full_conversation(list(transcript)):
        text = EXPORT_IMAGE_RE.sub("[Image attachment]", transcript[0].text or "")
        if len(text) > MAX_FULL_CONVERSATION_CHARS:
            text = text[:MAX_FULL_CONVERSATION_CHARS] + "\n\n[...transcript truncated for length...]"
        return text

    blocks = []
    for index, message in enumerate(sanitize_transcript(transcript)):
        label = SPEAKER_LABELS[normalize_speaker(message.speaker)]
        message_id = message.message_id or f"msg_{index}"
        blocks.append(f"[{message_id}] {label}:\n{message.text}")
    return "\n\n---\n\n".join(blocks)


def format_facts_for_prompt(facts: TicketFacts) -> str:
    lines = []
    for key, value in facts.model_dump().items():
        if isinstance(value, list):
            if value:
                lines.append(f"- {key}: [{', '.join(str(v) for v in value)}]")
        elif isinstance(value, dict):
            for custom_key, custom_value in value.items():
                lines.append(f"- {custom_key}: {custom_value}")
        elif value and value != "unknown":
            lines.append(f"- {key}: {value}")
    if not lines:
        return "No specific facts available."
    return "\n".join(lines)
