from __future__ import annotations

"""
Session-stable speaker attribution for transcript entries.

Design intent:
- Keep `raw diarization tag -> Clinician/Patient` assignment stable for a session.
- Accept explicit speaker names from backends, including Portuguese aliases.
- Fall back to a turn-alternation heuristic when no diarization is available;
  it is a guess and never presented as identification.
"""

import re
from typing import Optional

from scribe_capture.internal_core.contracts import SpeakerLabel

CLINICIAN: SpeakerLabel = "Clinician"
PATIENT: SpeakerLabel = "Patient"

_WS_RE = re.compile(r"\s+")

_ALIASES: dict[str, SpeakerLabel] = {
    "clinician": CLINICIAN,
    "doctor": CLINICIAN,
    "dr": CLINICIAN,
    "dr.": CLINICIAN,
    "médico": CLINICIAN,
    "medico": CLINICIAN,
    "médica": CLINICIAN,
    "medica": CLINICIAN,
    "patient": PATIENT,
    "paciente": PATIENT,
}


def normalize_speaker(value: Optional[str]) -> Optional[SpeakerLabel]:
    """Map a backend-provided speaker name to a logical speaker, or None when unknown."""
    text = _WS_RE.sub(" ", str(value or "").strip()).lower()
    if not text:
        return None
    return _ALIASES.get(text)


def _other(label: SpeakerLabel) -> SpeakerLabel:
    return PATIENT if label == CLINICIAN else CLINICIAN


class SpeakerAssignment:
    def __init__(self) -> None:
        self._tag_map: dict[str, SpeakerLabel] = {}
        self.last_speaker: Optional[SpeakerLabel] = None
        self.toggle_count = 0

    @property
    def known_tags(self) -> dict[str, SpeakerLabel]:
        return dict(self._tag_map)

    def from_diarization(self, raw: str) -> SpeakerLabel:
        """First distinct tag seen is the Clinician; every other tag is the Patient."""
        tag = str(raw).strip()
        mapped = self._tag_map.get(tag)
        if mapped is not None:
            return mapped
        mapped = CLINICIAN if not self._tag_map else PATIENT
        self._tag_map[tag] = mapped
        return mapped

    def peek_alternating(self) -> SpeakerLabel:
        if self.last_speaker is None:
            return CLINICIAN
        return _other(self.last_speaker)

    def note_final(self, label: SpeakerLabel) -> None:
        if self.last_speaker is not None and self.last_speaker != label:
            self.toggle_count += 1
        self.last_speaker = label

    def resolve(
        self,
        explicit: Optional[str] = None,
        raw: Optional[str] = None,
        *,
        final: bool,
    ) -> SpeakerLabel:
        """
        Pick the speaker for one backend result.

        Priority: explicit speaker name, then raw diarization tag, then alternation.
        Partials only peek at the alternation state; finals commit it.
        """
        label = normalize_speaker(explicit)
        if label is None and raw is not None and str(raw).strip():
            label = self.from_diarization(str(raw))
        if label is None:
            label = self.peek_alternating()
        if final:
            self.note_final(label)
        return label
