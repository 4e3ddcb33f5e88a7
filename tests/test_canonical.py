"""Unit tests for canonical JSON and fingerprints."""

from callaudit.engine.timeline import build_timeline
from callaudit.schemas.timeline import RecordingTranscript
from callaudit.utils.canonical import canonical_json, fingerprint


def test_canonical_json_sorts_keys():
    """Canonical JSON sorts keys."""
    obj = {"b": 1, "a": 2}
    assert canonical_json(obj) == '{"a":2,"b":1}'


def test_canonical_json_keeps_accents():
    """Non-ASCII text is kept as-is."""
    assert canonical_json({"texte": "déjà"}) == '{"texte":"déjà"}'


def test_fingerprint_deterministic():
    """Fingerprint is a stable SHA256 hex digest."""
    obj = {"steps": [{"position": 1, "weight": 5}], "name": "r"}
    h1 = fingerprint(obj)
    h2 = fingerprint({"name": "r", "steps": [{"weight": 5, "position": 1}]})
    assert h1 == h2
    assert len(h1) == 64  # SHA256 hex


def test_timeline_fingerprint_tracks_content():
    """Rebuilt timelines hash the same; changed content hashes differently."""
    words = [{"text": "allo", "start": 0, "end": 1, "speaker_id": "a"}]
    first = build_timeline([RecordingTranscript(call_id="c", words=words)])
    again = build_timeline([RecordingTranscript(call_id="c", words=words)])
    other = build_timeline([RecordingTranscript(call_id="c", words=[{**words[0], "text": "oui"}])])
    assert fingerprint(first) == fingerprint(again)
    assert fingerprint(first) != fingerprint(other)
