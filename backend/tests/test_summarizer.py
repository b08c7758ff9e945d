import pytest

from conftest import ScriptedLLMProvider
from ticket_audit.llm.provider import LLMCompletion
from ticket_audit.schemas.ticket import TranscriptMessage, full_conversation
from ticket_audit.services.summarizer import (
    IMAGE_ONLY_SUMMARY,
    MINIMAL_SUMMARY,
    UNAVAILABLE_SUMMARY,
    Summarizer,
)
from ticket_audit.services.transcript import (
    format_transcript_for_prompt,
    normalize_speaker,
    sanitize_transcript,
)


def _long_transcript():
    return [
        TranscriptMessage(message_id="1", speaker="user", text="My withdrawal has been pending for days. " * 10),
        TranscriptMessage(message_id="2", speaker="agent", text="Let me look into the withdrawal for you. " * 10),
    ]


@pytest.mark.asyncio
async def test_short_transcript_is_returned_verbatim(settings):
    provider = ScriptedLLMProvider(["unused"])
    transcript = [
        TranscriptMessage(speaker="user", text="Where is my deposit from this morning?"),
        TranscriptMessage(speaker="agent", text="Checking it now."),
    ]
    summary = await Summarizer(settings, provider).summarize(transcript)
    assert summary == "[user]: Where is my deposit from this morning?\n[agent]: Checking it now."
    assert provider.calls == []


@pytest.mark.asyncio
async def test_minimal_and_image_only_transcripts(settings):
    provider = ScriptedLLMProvider(["unused"])
    summarizer = Summarizer(settings, provider)
    assert await summarizer.summarize([TranscriptMessage(speaker="user", text="hi")]) == MINIMAL_SUMMARY
    assert await summarizer.summarize([TranscriptMessage(speaker="user", text="  ")]) == IMAGE_ONLY_SUMMARY
    assert provider.calls == []


@pytest.mark.asyncio
async def test_long_transcript_uses_model(settings):
    provider = ScriptedLLMProvider(["Customer asked about a pending withdrawal."])
    summary = await Summarizer(settings, provider).summarize(_long_transcript())
    assert summary == "Customer asked about a pending withdrawal."
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_model_failure_falls_back_to_excerpt(settings):
    provider = ScriptedLLMProvider([RuntimeError("timeout")])
    summary = await Summarizer(settings, provider).summarize(_long_transcript())
    assert summary.endswith("...")
    assert len(summary) == settings.summary_fallback_chars + 3


@pytest.mark.asyncio
async def test_empty_model_output_falls_back(settings):
    provider = ScriptedLLMProvider([LLMCompletion(content="", finish_reason="length")])
    summary = await Summarizer(settings, provider).summarize(_long_transcript())
    assert summary and summary != UNAVAILABLE_SUMMARY


def test_sanitize_transcript_replaces_images():
    cleaned = sanitize_transcript(
        [
            TranscriptMessage(speaker="user", text="data:image/png;base64,AAAA"),
            TranscriptMessage(speaker="user", text=""),
            TranscriptMessage(speaker="user", text="see https://cdn.example.com/shot.png please"),
        ]
    )
    assert [m.text for m in cleaned] == [
        "[User sent an image]",
        "see [Image: https://cdn.example.com/shot.png] please",
    ]


def test_format_transcript_labels_speakers():
    text = format_transcript_for_prompt(
        [
            TranscriptMessage(message_id="a1", speaker="Jane from Stake.com", text="Hello"),
            TranscriptMessage(speaker="ote02", text="Hi"),
        ]
    )
    assert text == "[a1] AGENT:\nHello\n\n---\n\n[msg_1] USER:\nHi"


def test_full_conversation_is_truncated():
    text = format_transcript_for_prompt(full_conversation("x" * 20000))
    assert text.startswith("x" * 15000)
    assert text.endswith("[...transcript truncated for length...]")


@pytest.mark.parametrize(
    "label, expected",
    [
        ("Jane from Stake.com", "agent"),
        ("Support Team", "agent"),
        ("ote02", "user"),
        (None, "user"),
        ("Automated Bot", "system"),
    ],
)
def test_normalize_speaker(label, expected):
    assert normalize_speaker(label) == expected
