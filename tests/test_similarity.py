from voice_intake.similarity import levenshtein_distance, name_similarity, normalize_name, similarity


def test_normalize_collapses_whitespace_and_case():
    assert normalize_name("  Camera   12 ") == "camera 12"
    assert normalize_name(None) == ""


def test_levenshtein_distance_basics():
    assert levenshtein_distance("kitten", "sitting") == 3
    assert levenshtein_distance("", "abc") == 3
    assert levenshtein_distance("abc", "abc") == 0


def test_similarity_is_one_minus_distance_over_max_len():
    assert similarity("abcde", "abxye") == 0.6
    assert similarity("abcde", "abcdx") == 0.8
    assert similarity("Siemens", "siemens") == 1.0
    assert similarity("", "") == 1.0


def test_similarity_is_symmetric():
    assert similarity("medika", "medica srl") == similarity("medica srl", "medika")


def test_name_similarity_weights_partial_hits():
    # one word of two matched closely: below auto-resolve
    score = name_similarity("Siemenz", "Siemens Healthcare")
    assert score == 0.771429
    assert 0.7 <= score < 0.8


def test_name_similarity_single_word_names_use_full_score():
    assert name_similarity("abcde", "abcdx") == similarity("abcde", "abcdx")


def test_scores_follow_normalized_levenshtein():
    from rapidfuzz.distance import Levenshtein

    assert similarity("Medika Srl", "medica srl") == round(Levenshtein.normalized_similarity("medika srl", "medica srl"), 6)


def test_zero_partial_weight_keeps_full_name_score():
    assert name_similarity("Siemenz", "Siemens Healthcare", partial_weight=0.0) == similarity("Siemenz", "Siemens Healthcare")
