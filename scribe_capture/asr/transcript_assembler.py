from __future__ import annotations

"""
Merge partial/final backend results into one ordered transcript.

Design intent:
- Keep at most one trailing partial entry; every new partial replaces it in place.
- Finals are append-only and immutable, in receipt order.
- `flush()` seals the buffer at session end so late results cannot reorder it.
"""

import datetime as _dt
import logging
from typing import Callable, Iterator, Literal, Optional

from scribe_capture.internal_core.contracts import BackendKind, SpeakerLabel, TranscriptEntry

logger = logging.getLogger(__name__)

TranscriptChangeKind = Literal["partial", "final", "partial_cleared", "flushed"]
TranscriptListener = Callable[[TranscriptChangeKind, Optional[TranscriptEntry]], None]


def _now_utc() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


class TranscriptView:
    """Restartable view over the live buffer; each iteration re-reads current entries."""

    def __init__(self, assembler: "TranscriptAssembler", *, include_partial: bool) -> None:
        self._assembler = assembler
        self._include_partial = include_partial

    def _snapshot(self) -> list[TranscriptEntry]:
        entries = list(self._assembler._finals)
        partial = self._assembler._partial
        if self._include_partial and partial is not None:
            entries.append(partial)
        return entries

    def __iter__(self) -> Iterator[TranscriptEntry]:
        return iter(self._snapshot())

    def __len__(self) -> int:
        return len(self._snapshot())


class TranscriptAssembler:
    def __init__(self, *, clock: Callable[[], _dt.datetime] = _now_utc) -> None:
        self._clock = clock
        self._finals: list[TranscriptEntry] = []
        self._partial: Optional[TranscriptEntry] = None
        self._next_seq = 0
        self._sealed = False
        self._listeners: list[TranscriptListener] = []

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def trailing_partial(self) -> Optional[TranscriptEntry]:
        return self._partial

    def add_listener(self, cb: TranscriptListener) -> Callable[[], None]:
        self._listeners.append(cb)

        def _remove() -> None:
            if cb in self._listeners:
                self._listeners.remove(cb)

        return _remove

    def on_partial(
        self,
        text: str,
        speaker: SpeakerLabel,
        raw_label: Optional[str] = None,
        *,
        source_backend: BackendKind,
    ) -> Optional[TranscriptEntry]:
        if self._sealed:
            return None
        cleaned = " ".join(str(text or "").split())
        if not cleaned:
            if self._partial is not None:
                self._partial = None
                self._notify("partial_cleared", None)
            return None
        # The trailing partial keeps its slot; replacements reuse its seq.
        seq = self._partial.seq if self._partial is not None else self._next_seq
        entry = TranscriptEntry(
            seq=seq,
            timestamp=self._clock(),
            speaker_label=speaker,
            text=cleaned,
            is_partial=True,
            source_backend=source_backend,
            raw_speaker_label=raw_label,
        )
        self._partial = entry
        self._notify("partial", entry)
        return entry

    def on_final(
        self,
        text: str,
        speaker: SpeakerLabel,
        raw_label: Optional[str] = None,
        *,
        source_backend: BackendKind,
    ) -> Optional[TranscriptEntry]:
        if self._sealed:
            return None
        had_partial = self._partial is not None
        self._partial = None
        cleaned = " ".join(str(text or "").split())
        if not cleaned:
            if had_partial:
                self._notify("partial_cleared", None)
            return None
        return self._append_final(cleaned, speaker, raw_label, source_backend)

    def flush(self) -> Optional[TranscriptEntry]:
        if self._sealed:
            return None
        flushed: Optional[TranscriptEntry] = None
        partial = self._partial
        self._partial = None
        if partial is not None and partial.text.strip():
            flushed = self._append_final(
                partial.text,
                partial.speaker_label,
                partial.raw_speaker_label,
                partial.source_backend,
            )
        self._sealed = True
        self._notify("flushed", flushed)
        return flushed

    def get_ordered_transcript(self, include_partial: bool = False) -> TranscriptView:
        return TranscriptView(self, include_partial=include_partial)

    def transcript_text(self) -> str:
        finals = [entry.text for entry in self._finals if entry.text.strip()]
        if finals:
            return " ".join(finals)
        if self._partial is not None:
            return self._partial.text
        return ""

    def _append_final(
        self,
        text: str,
        speaker: SpeakerLabel,
        raw_label: Optional[str],
        source_backend: BackendKind,
    ) -> TranscriptEntry:
        entry = TranscriptEntry(
            seq=self._next_seq,
            timestamp=self._clock(),
            speaker_label=speaker,
            text=text,
            is_partial=False,
            source_backend=source_backend,
            raw_speaker_label=raw_label,
        )
        self._next_seq += 1
        self._finals.append(entry)
        self._notify("final", entry)
        return entry

    def _notify(self, kind: TranscriptChangeKind, entry: Optional[TranscriptEntry]) -> None:
        for cb in list(self._listeners):
            try:
                cb(kind, entry)
            except Exception:
                logger.exception("Transcript listener failed kind=%s", kind)
