"""Supported languages and conversation pair identifiers."""

from typing import Dict, List

from ..models.schemas import LanguagePair

LANGUAGES: Dict[str, str] = {
    "en-US": "English",
    "es-ES": "Spanish",
    "fr-FR": "French",
    "de-DE": "German",
    "it-IT": "Italian",
    "pt-BR": "Portuguese",
    "fi-FI": "Finnish",
    "sv-SE": "Swedish",
    "ja-JP": "Japanese",
    "zh-CN": "Chinese",
}

PAIR_SEPARATOR = "__"


def make_pair_id(target_code: str, native_code: str) -> str:
    return f"{target_code}{PAIR_SEPARATOR}{native_code}"


def parse_pair_id(pair_id: str) -> LanguagePair:
    """
    Resolve a pair id such as ``es-ES__en-US``.

    Raises:
        ValueError: If the id is malformed or names an unknown language
    """
    parts = (pair_id or "").split(PAIR_SEPARATOR)
    if len(parts) != 2:
        raise ValueError(f"invalid pair id: {pair_id!r}")
    target_code, native_code = parts
    for code in (target_code, native_code):
        if code not in LANGUAGES:
            raise ValueError(f"unsupported language: {code!r}")
    if target_code == native_code:
        raise ValueError("target and native language must differ")
    return LanguagePair(
        target_code=target_code,
        target_name=LANGUAGES[target_code],
        native_code=native_code,
        native_name=LANGUAGES[native_code],
    )


def list_pairs() -> List[str]:
    return [
        make_pair_id(target, native)
        for target in LANGUAGES
        for native in LANGUAGES
        if target != native
    ]
