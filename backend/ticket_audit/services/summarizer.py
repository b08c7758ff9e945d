import logging
from typing import Sequence

from ticket_audit.core.config import Settings
from ticket_audit.llm.provider import LLMMessage, LLMProvider
from ticket_audit.schemas.ticket import TranscriptMessage, is_full_conversation
from ticket_audit.services.transcript import sanitize_transcript, transcript_text

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "Summarize this support ticket in 2-3 sentences. Focus on: what the user asked about, "
    "what the agent did, and the outcome."
)
IMAGE_ONLY_SUMMARY = "Ticket contains only images or no text content."
MINIMAL_SUMMARY = "Ticket contains minimal or no text content."
UNAVAILABLE_SUMMARY = "Unable to generate summary"


class Summarizer:
    """Short synopsis of a transcript, never empty."""

    def __init__(self, settings: Settings, llm_provider: LLMProvider) -> None:
        self.settings = settings
        self.llm_provider = llm_provider

    async def summarize(self, transcript: Sequence[TranscriptMessage]) -> str:
        if not is_full_conversation(list(transcript)) and not sanitize_transcript(transcript):
            return IMAGE_ONLY_SUMMARY

        text = transcript_text(transcript)
        if len(text.strip()) < self.settings.summary_min_chars:
            return MINIMAL_SUMMARY
        if len(text) < self.settings.summary_direct_chars:
            return text

        truncated = text[: self.settings.summary_input_chars]
        try:
            completion = await self.llm_provider.generate(
                [
                    LLMMessage(role="system", content=SUMMARY_SYSTEM_PROMPT),
                    LLMMessage(role="user", content=truncated),
                ],
                self.settings.llm_model,
                max_completion_tokens=self.settings.summary_max_completion_tokens,
            )
        except Exception as exc:
            logger.warning("Summary generation failed, using transcript excerpt", extra={"error": str(exc)})
            return self._fallback(text)

        summary = (completion.content or "").strip()
        if not summary:
            logger.warning(
                "Summary model returned empty output, using transcript excerpt",
                extra={"finish_reason": completion.finish_reason},
            )
            return self._fallback(text)
        return summary

    def _fallback(self, text: str) -> str:
        excerpt = text[: self.settings.summary_fallback_chars]
        if not excerpt.strip():
            return UNAVAILABLE_SUMMARY
        if len(text) > len(excerpt):
            return excerpt + "..."
        return excerpt
