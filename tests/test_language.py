import pytest

from damsync.providers.imageshop.language import resolve_language


@pytest.mark.parametrize(
    "locale, expected",
    [
        ("nb_NO", "no"),
        ("nn_NO", "no"),
        ("sv_SE", "sv"),
        ("da_DK", "dk"),
        ("en_US", "en"),
        ("en_GB", "en"),
        ("NB", "nb"),
        ("de_DE", "en"),
        ("", "en"),
        (None, "en"),
    ],
)
def test_resolve_language(locale, expected):
    assert resolve_language(locale) == expected
