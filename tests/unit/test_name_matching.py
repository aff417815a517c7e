import pytest

from cocoatrack.services.name_matching import chunked, normalize_name


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Jean Koffi", "jean koffi"),
        ("  jean   KOFFI ", "jean koffi"),
        ("Kouassi Hélène", "kouassi helene"),
        ("N'GUESSAN Aya", "n'guessan aya"),
        ("Ébrié\tAdjoua", "ebrie adjoua"),
    ],
)
def test_normalize_name(raw, expected):
    assert normalize_name(raw) == expected


def test_normalize_name_empty_values():
    assert normalize_name(None) == ""
    assert normalize_name("") == ""
    assert normalize_name("   ") == ""


def test_case_and_accent_variants_collide():
    assert normalize_name("Jean Koffi") == normalize_name("jean koffi") == normalize_name("JEAN  KÖFFI")


def test_chunked_batches():
    assert chunked(list(range(45)), 20) == [list(range(20)), list(range(20, 40)), list(range(40, 45))]
    assert chunked([], 20) == []


def test_chunked_rejects_non_positive_size():
    with pytest.raises(ValueError):
        chunked([1, 2], 0)
