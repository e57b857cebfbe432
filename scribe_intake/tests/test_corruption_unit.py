from scribe_intake.detection.corruption import (
    CorruptionDetector,
    DetectorConfig,
    RepetitionRule,
    describe_flags,
)


def _kinds(flags) -> list[str]:
    return [f.kind for f in flags]


def test_boilerplate_phrase_flagged_regardless_of_case() -> None:
    detector = CorruptionDetector()
    text = "Patient reports improved sleep this week. THANKS for Watching, see you next time."

    flags = detector.inspect(text)

    boilerplate = [f for f in flags if f.kind == "boilerplate_phrase"]
    assert [f.phrase for f in boilerplate] == ["thanks for watching"]
    assert "thanks for watching" in boilerplate[0].message


def test_clean_dictation_has_no_flags() -> None:
    text = (
        "Follow-up visit for hypertension. Blood pressure today is 128 over 82. "
        "Continue lisinopril ten milligrams daily and recheck in three months."
    )
    assert CorruptionDetector().inspect(text) == []
    assert CorruptionDetector().inspect("") == []


def test_english_four_times_flags_repetition() -> None:
    flags = CorruptionDetector().inspect("English English English English")

    repetition = [f for f in flags if f.kind == "repetition_pattern"]
    assert len(repetition) == 1
    assert repetition[0].rule == "english_loop"
    assert repetition[0].count == 4
    assert repetition[0].message == "detected repeated filler content: 'english' repeated 4 times"


def test_english_twice_does_not_trip_repetition_rule() -> None:
    flags = CorruptionDetector().inspect("The patient speaks English. English is her first language.")
    assert "repetition_pattern" not in _kinds(flags)


def test_thanks_for_watching_loop_needs_five_repeats() -> None:
    detector = CorruptionDetector()
    four = " ".join(["Thanks for watching!"] * 4)
    five = " ".join(["Thanks for watching!"] * 5)

    assert "repetition_pattern" not in _kinds(detector.inspect(four))
    loop = [f for f in detector.inspect(five) if f.kind == "repetition_pattern"]
    assert loop[0].rule == "thanks_for_watching_loop"
    assert loop[0].count == 5


def test_dominant_word_at_sixty_percent_is_flagged() -> None:
    words = ["cough"] * 60 + [f"word{i}" for i in range(40)]
    flags = CorruptionDetector().inspect(" ".join(words))

    assert _kinds(flags) == ["word_dominance"]
    assert flags[0].word == "cough"
    assert flags[0].percentage == 60.0
    assert flags[0].message == "detected dominant-word repetition at 60.0% ('cough')"


def test_dominant_word_at_forty_percent_is_not_flagged() -> None:
    words = ["cough"] * 40 + [f"word{i}" for i in range(60)]
    assert CorruptionDetector().inspect(" ".join(words)) == []


def test_short_words_never_count_as_dominant() -> None:
    assert CorruptionDetector().inspect("the the the cat") == []


def test_short_transcript_dominance_has_no_floor_by_default() -> None:
    # A legitimately repeated term in a very short dictation still trips the
    # dominance check unless a minimum token count is configured.
    text = "Pain, pain pain"
    default_flags = CorruptionDetector().inspect(text)
    assert [f.word for f in default_flags] == ["pain"]
    assert default_flags[0].percentage == 66.7

    floored = CorruptionDetector(DetectorConfig(dominance_min_tokens=20))
    assert floored.inspect(text) == []


def test_all_triggered_flags_are_reported() -> None:
    text = "please subscribe english english english"
    flags = CorruptionDetector().inspect(text)

    assert set(_kinds(flags)) == {"boilerplate_phrase", "repetition_pattern", "word_dominance"}
    summary = describe_flags(flags)
    assert "please subscribe" in summary
    assert "repeated 3 times" in summary
    assert "60.0%" in summary


def test_phrase_and_rule_lists_are_configurable() -> None:
    config = DetectorConfig(
        boilerplate_phrases=("visit our website",),
        repetition_rules=(RepetitionRule(name="okay_loop", phrase="okay", min_repeats=3),),
    )
    detector = CorruptionDetector(config)

    assert detector.inspect("thanks for watching") == []
    flags = detector.inspect("Visit our website. Okay okay okay, next question about the rash today")
    assert set(_kinds(flags)) == {"boilerplate_phrase", "repetition_pattern"}
    payload = flags[1].to_payload()
    assert payload["rule"] == "okay_loop"
    assert payload["count"] == 3
