from src.kbqa.tokens import estimate_tokens


def test_empty_text_is_zero():
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0


def test_rounds_up():
    assert estimate_tokens("a") == 1
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_known_length():
    assert estimate_tokens("A" * 300) == 75


def test_non_decreasing_in_length():
    previous = 0
    for n in range(0, 200):
        current = estimate_tokens("x" * n)
        assert current >= previous
        assert current >= 0
        previous = current
