"""Timeline builder - word streams to speaker turns to size-bounded chunks.

Chunk boundaries must stay stable for a given input: citations store
``recording_index``/``chunk_index`` pairs that are resolved later against
the same timeline.
"""

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from callaudit.config import settings
from callaudit.schemas.timeline import (
    RecordingTranscript,
    Timeline,
    TimelineChunk,
    TimelineRecording,
    TranscriptWord,
)
from callaudit.utils.recording import parse_recording_url

logger = logging.getLogger(__name__)

UNKNOWN_SPEAKER = "unknown"
SPACING = "spacing"


@dataclass
class Message:
    """Consecutive words of one speaker."""

    speaker: str
    text: str
    start: float
    end: float


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def coerce_word(raw: Any) -> TranscriptWord | None:
    """Validate one raw word; returns None for anything unusable."""
    if isinstance(raw, TranscriptWord):
        return raw
    if not isinstance(raw, dict):
        return None
    text = raw.get("text")
    start = _as_number(raw.get("start"))
    end = _as_number(raw.get("end"))
    if not isinstance(text, str) or start is None or end is None:
        return None
    word_type = raw.get("type")
    speaker = raw.get("speaker_id")
    if isinstance(speaker, int) and not isinstance(speaker, bool):
        speaker = str(speaker)
    return TranscriptWord(
        text=text,
        start=start,
        end=end,
        type=word_type if isinstance(word_type, str) else "word",
        speaker_id=speaker if isinstance(speaker, str) and speaker else None,
    )


def merge_messages(words: Iterable[TranscriptWord]) -> list[Message]:
    """Merge consecutive same-speaker words; spacing tokens never break a turn."""
    messages: list[Message] = []
    current: Message | None = None
    parts: list[str] = []

    for word in words:
        if word.type == SPACING:
            continue
        text = word.text.strip()
        if not text:
            continue
        speaker = word.speaker_id or UNKNOWN_SPEAKER
        if current is not None and speaker == current.speaker:
            parts.append(text)
            current.end = word.end
            continue
        if current is not None:
            current.text = " ".join(parts)
            messages.append(current)
        current = Message(speaker=speaker, text="", start=word.start, end=word.end)
        parts = [text]

    if current is not None:
        current.text = " ".join(parts)
        messages.append(current)
    return messages


def chunk_messages(messages: Sequence[Message], chunk_size: int) -> list[TimelineChunk]:
    """Group messages into chunks of at most ``chunk_size`` messages."""
    size = max(1, int(chunk_size))
    chunks: list[TimelineChunk] = []
    for i in range(0, len(messages), size):
        batch = messages[i : i + size]
        speakers: list[str] = []
        for m in batch:
            if m.speaker not in speakers:
                speakers.append(m.speaker)
        chunks.append(
            TimelineChunk(
                chunk_index=len(chunks),
                start_ts=batch[0].start,
                end_ts=batch[-1].end,
                message_count=len(batch),
                speakers=speakers,
                full_text="\n".join(f"{m.speaker}: {m.text}" for m in batch),
            )
        )
    return chunks


def build_chunks_from_words(raw_words: Iterable[Any], chunk_size: int | None = None) -> list[TimelineChunk]:
    """Word-level transcript to chunks; malformed words are skipped one by one."""
    words = [w for w in (coerce_word(raw) for raw in raw_words) if w is not None]
    return chunk_messages(merge_messages(words), chunk_size or settings.timeline_chunk_size)


def synthesize_words(
    text: str,
    duration_seconds: float | None = None,
    seconds_per_word: float | None = None,
    speaker_block: int | None = None,
) -> list[TranscriptWord]:
    """Rebuild evenly-timed words from plain text (no diarization available).

    Speakers alternate between speaker_0 and speaker_1 every ``speaker_block`` words.
    """
    tokens = text.split()
    if not tokens:
        return []
    per_word = settings.fallback_seconds_per_word if seconds_per_word is None else seconds_per_word
    block = max(1, speaker_block or settings.fallback_speaker_block)
    if duration_seconds and duration_seconds > 0:
        duration = float(duration_seconds)
    else:
        duration = max(1.0, round(len(tokens) * per_word))
    word_duration = max(0.05, duration / len(tokens))
    return [
        TranscriptWord(
            text=token,
            start=idx * word_duration,
            end=(idx + 1) * word_duration,
            type="word",
            speaker_id=f"speaker_{(idx // block) % 2}",
        )
        for idx, token in enumerate(tokens)
    ]


def build_recording_chunks(transcript: RecordingTranscript, chunk_size: int | None = None) -> list[TimelineChunk]:
    """Chunks for one recording: words, then pre-chunked data, then text fallback."""
    size = chunk_size or settings.timeline_chunk_size
    if transcript.words:
        chunks = build_chunks_from_words(transcript.words, size)
        if chunks:
            return chunks
    if transcript.chunks:
        return [c.model_copy(update={"chunk_index": i}) for i, c in enumerate(transcript.chunks)]
    if transcript.text and transcript.text.strip():
        logger.warning(
            "No word timing for call %s; rebuilding timeline from plain text",
            transcript.call_id or "?",
        )
        words = synthesize_words(transcript.text, transcript.duration_seconds)
        return chunk_messages(merge_messages(words), size)
    return []


def build_timeline(
    transcripts: Sequence[RecordingTranscript],
    chunk_size: int | None = None,
) -> Timeline:
    """Build the case timeline.

    ``recording_index`` follows append order; recordings that produce no
    chunks are dropped rather than emitted empty.
    """
    recordings: list[TimelineRecording] = []
    for source_index, transcript in enumerate(transcripts):
        chunks = build_recording_chunks(transcript, chunk_size)
        if not chunks:
            logger.warning(
                "Recording %d (call_id=%s) produced no chunks; dropped from timeline",
                source_index,
                transcript.call_id or "?",
            )
            continue

        parsed = parse_recording_url(transcript.recording_url)
        if not transcript.recording_url:
            logger.warning("Recording %d (call_id=%s) has no recording URL", source_index, transcript.call_id or "?")

        recordings.append(
            TimelineRecording(
                recording_index=len(recordings),
                call_id=transcript.call_id,
                recording_url=transcript.recording_url,
                start_time=transcript.start_time,
                duration_seconds=transcript.duration_seconds or 0,
                recording_date=transcript.recording_date or (parsed["date"] if parsed else ""),
                recording_time=transcript.recording_time or (parsed["time"] if parsed else ""),
                from_number=transcript.from_number or (parsed["from_number"] if parsed else ""),
                to_number=transcript.to_number or (parsed["to_number"] if parsed else ""),
                total_chunks=len(chunks),
                chunks=chunks,
            )
        )

    timeline = Timeline(recordings=recordings)
    logger.info("Timeline: %d recordings, %d chunks", len(timeline.recordings), timeline.total_chunks)
    return timeline


def render_timeline_text(timeline: Timeline) -> str:
    """Render the whole timeline as the text block handed to the oracle."""
    rule = "=" * 80
    lines = [rule, "FULL CONVERSATION TIMELINE", rule, ""]
    for rec in timeline.recordings:
        lines += [
            rule,
            f"Recording #{rec.recording_index + 1} (recording_index={rec.recording_index})",
            f"Date: {rec.recording_date or 'N/A'}",
            f"Time: {rec.recording_time or 'N/A'}",
            f"Call ID: {rec.call_id}",
            f"From: {rec.from_number or 'N/A'} -> To: {rec.to_number or 'N/A'}",
            f"Duration: {rec.duration_seconds}s",
            f"Total chunks: {rec.total_chunks}",
            rule,
        ]
        for chunk in rec.chunks:
            lines += [
                "",
                f"--- Chunk {chunk.chunk_index + 1} (chunk_index={chunk.chunk_index}) ---",
                f"Time: {chunk.start_ts}s - {chunk.end_ts}s",
                f"Speakers: {', '.join(chunk.speakers)}",
                "",
                "Conversation:",
                chunk.full_text,
            ]
    lines += ["", rule, "END OF TIMELINE", rule, ""]
    return "\n".join(lines)
