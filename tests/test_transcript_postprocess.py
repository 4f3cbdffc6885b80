from voice_intake.transcript_postprocess import TranscriptPostProcessor


def test_known_terms_are_corrected_as_whole_words():
    processor = TranscriptPostProcessor()
    assert processor.process("il gruppo UBS della Phillips") == "il gruppo UPS della Philips"
    # no partial-word replacement
    assert processor.process("CUBS") == "CUBS"


def test_phonetic_spelling_collapses_to_letters():
    processor = TranscriptPostProcessor()
    assert processor.process("modello A come Ancona, P come Padova, C come Como 3000") == "modello APC 3000"


def test_come_without_city_is_left_alone():
    processor = TranscriptPostProcessor()
    assert processor.process("funziona come prima") == "funziona come prima"


def test_extra_corrections():
    processor = TranscriptPostProcessor({"Malvestio": "Malvestio", "malvesto": "Malvestio"})
    assert processor.process("letto malvesto") == "letto Malvestio"
