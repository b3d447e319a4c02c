"""Parser for dual-language tutor replies."""

import re
from typing import List

from ..models.schemas import TranslationPair

_BRACKETED = re.compile(r"\[[^\]]*\]")


def parse_reply(raw_text: str, native_prefix: str) -> List[TranslationPair]:
    """
    Split a raw reply into ordered (target, native) sentence pairs.

    A line starting with ``native_prefix`` is the translation of the target
    line right before it. A target line with no translation gets an empty
    native half; an orphan translation gets an empty target half. Non-empty
    text that yields no pairs becomes a single pair.

    Args:
        raw_text: Unparsed model output
        native_prefix: Line prefix marking translations, e.g. ``[EN]``

    Returns:
        Ordered list of TranslationPair
    """
    lines = [line.strip() for line in (raw_text or "").splitlines()]
    lines = [line for line in lines if line]
    prefix = native_prefix.strip()

    pairs: List[TranslationPair] = []
    pending_target = None

    for line in lines:
        if prefix and line.startswith(prefix):
            native = line[len(prefix):].strip()
            if pending_target is not None:
                pairs.append(TranslationPair(target=pending_target, native=native))
                pending_target = None
            else:
                pairs.append(TranslationPair(target="", native=native))
            continue

        if pending_target is not None:
            pairs.append(TranslationPair(target=pending_target, native=""))
        pending_target = line

    if pending_target is not None:
        pairs.append(TranslationPair(target=pending_target, native=""))

    if not pairs and (raw_text or "").strip():
        pairs.append(TranslationPair(target=raw_text.strip(), native=""))
    return pairs


def strip_bracketed(text: str) -> str:
    """Remove bracketed annotations such as [laughing] and collapse spaces."""
    return re.sub(r"\s+", " ", _BRACKETED.sub(" ", text or "")).strip()
