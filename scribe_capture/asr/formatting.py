from __future__ import annotations

"""
Format transcript entries into display lines and the analysis hand-off.

Design intent:
- Keep UI and prompt-facing transcript deterministic.
- Finals win; a trailing partial is only used when nothing is final yet.
"""

from typing import Any, Iterable

from scribe_capture.internal_core.contracts import TranscriptEntry


def _normalize(text: str) -> str:
    return " ".join(str(text or "").split()).strip()


def format_line(entry: TranscriptEntry) -> str:
    return f"[{entry.display_time()}] {entry.speaker_label}: {_normalize(entry.text)}"


def format_for_display(entries: Iterable[TranscriptEntry]) -> str:
    lines: list[str] = []
    for entry in entries:
        if not _normalize(entry.text):
            continue
        line = format_line(entry)
        if entry.is_partial:
            line = f"{line} …"
        lines.append(line)
    return "\n".join(lines)


def transcript_text(entries: Iterable[TranscriptEntry]) -> str:
    items = list(entries)
    finals = [_normalize(item.text) for item in items if not item.is_partial and _normalize(item.text)]
    if finals:
        return " ".join(finals)
    partials = [_normalize(item.text) for item in items if item.is_partial and _normalize(item.text)]
    return " ".join(partials)


def build_analysis_payload(entries: Iterable[TranscriptEntry]) -> dict[str, Any]:
    """Body for the downstream analysis pipeline; an empty transcript is rejected."""
    text = transcript_text(entries)
    if not text:
        raise ValueError("Transcript is empty; nothing to analyze.")
    return {"transcription": text}
