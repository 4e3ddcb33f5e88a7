"""Transcript input and conversation timeline schemas."""

from typing import Any

from pydantic import BaseModel, Field


class TranscriptWord(BaseModel):
    """Word-level transcript token."""

    text: str
    start: float
    end: float
    type: str = "word"
    speaker_id: str | None = None


class RecordingTranscript(BaseModel):
    """Per-recording transcript as supplied by the transcript source.

    Exactly one of ``words`` (raw, possibly malformed word dicts), ``chunks``
    (pre-chunked conversation) or ``text`` (plain text fallback) is expected
    to carry content; they are tried in that order.
    """

    call_id: str = ""
    recording_url: str = ""
    start_time: str = ""
    duration_seconds: float | None = None
    recording_date: str = ""
    recording_time: str = ""
    from_number: str = ""
    to_number: str = ""
    words: list[Any] | None = None
    chunks: list["TimelineChunk"] | None = None
    text: str | None = None


class TimelineChunk(BaseModel):
    """A size-bounded run of speaker messages."""

    chunk_index: int
    start_ts: float
    end_ts: float
    message_count: int
    speakers: list[str] = Field(default_factory=list)
    full_text: str


class TimelineRecording(BaseModel):
    """One recording in the case timeline; ``recording_index`` is the citation key."""

    recording_index: int
    call_id: str = ""
    recording_url: str = ""
    start_time: str = ""
    duration_seconds: float = 0
    recording_date: str = ""
    recording_time: str = ""
    from_number: str = ""
    to_number: str = ""
    total_chunks: int
    chunks: list[TimelineChunk]


class Timeline(BaseModel):
    """Ordered recordings of one case."""

    recordings: list[TimelineRecording] = Field(default_factory=list)

    @property
    def total_chunks(self) -> int:
        return sum(r.total_chunks for r in self.recordings)

    @property
    def is_empty(self) -> bool:
        return self.total_chunks == 0

    def recording(self, recording_index: int) -> TimelineRecording | None:
        for rec in self.recordings:
            if rec.recording_index == recording_index:
                return rec
        return None


RecordingTranscript.model_rebuild()
