from scribe_capture.asr.speaker_assignment import SpeakerAssignment, normalize_speaker


def test_first_diarization_tag_is_clinician_and_mapping_is_stable() -> None:
    speakers = SpeakerAssignment()
    assert speakers.from_diarization("spk_0") == "Clinician"
    assert speakers.from_diarization("spk_1") == "Patient"
    assert speakers.from_diarization("spk_2") == "Patient"
    assert speakers.from_diarization("spk_0") == "Clinician"
    assert speakers.known_tags == {"spk_0": "Clinician", "spk_1": "Patient", "spk_2": "Patient"}


def test_alternation_starts_with_clinician_and_toggles_on_finals() -> None:
    speakers = SpeakerAssignment()
    assert speakers.peek_alternating() == "Clinician"
    assert speakers.resolve(final=True) == "Clinician"
    assert speakers.peek_alternating() == "Patient"
    assert speakers.resolve(final=True) == "Patient"
    assert speakers.resolve(final=True) == "Clinician"
    assert speakers.toggle_count == 2


def test_resolve_prefers_explicit_alias_then_tag_then_alternation() -> None:
    speakers = SpeakerAssignment()
    assert speakers.resolve("Médico", "spk_9", final=True) == "Clinician"
    assert speakers.resolve(None, "spk_9", final=True) == "Clinician"
    assert speakers.resolve(None, "spk_4", final=True) == "Patient"
    assert speakers.resolve(None, None, final=False) == "Clinician"
    assert speakers.last_speaker == "Patient"


def test_partials_do_not_advance_alternation() -> None:
    speakers = SpeakerAssignment()
    speakers.resolve(final=True)
    for _ in range(3):
        assert speakers.resolve(final=False) == "Patient"
    assert speakers.resolve(final=True) == "Patient"
    assert speakers.resolve(final=True) == "Clinician"


def test_normalize_speaker_aliases() -> None:
    assert normalize_speaker("paciente") == "Patient"
    assert normalize_speaker(" Doctor ") == "Clinician"
    assert normalize_speaker("medico") == "Clinician"
    assert normalize_speaker("spk_0") is None
    assert normalize_speaker("") is None
