from __future__ import annotations

import re

DEFAULT_LANGUAGE = "en"

# Languages supported by the Imageshop API, and the locales that map onto them.
AVAILABLE_LOCALES: dict[str, dict] = {
    "dk": {
        "label": "Danish",
        "iso_codes": {"da": "string", "dk": "string", "da_DK": "string"},
    },
    "en": {
        "label": "English",
        "iso_codes": {r"en_*": "regex"},
    },
    "no": {
        "label": "Norwegian",
        "iso_codes": {"nb": "string", "nn": "string", "nb_NO": "string", "nn_NO": "string"},
    },
    "sv": {
        "label": "Swedish",
        "iso_codes": {"se": "string", "sv": "string", "sv_SE": "string"},
    },
}


def resolve_language(locale: str | None) -> str:
    """Map a host locale such as ``nb_NO`` onto an Imageshop language code.

    Two-letter locales are ISO-639-1 already and are used as-is (lowercased).
    Anything else is matched against ``AVAILABLE_LOCALES``; the last matching
    entry wins, and ``en`` is the fallback.
    """
    value = (locale or "").strip()
    if len(value) == 2:
        return value.lower()

    language_code = ""
    for code, attributes in AVAILABLE_LOCALES.items():
        for iso, kind in attributes["iso_codes"].items():
            if kind == "string" and iso == value:
                language_code = code
            elif kind == "regex" and re.search(iso, value):
                language_code = code

    return language_code or DEFAULT_LANGUAGE
