from __future__ import annotations

import re


_SPACE_RE = re.compile(r"\s+")


def normalize_text(value: str | None) -> str:
    return _SPACE_RE.sub(" ", str(value or "")).strip().lower()


def find_keyword_matches(text: str | None, keywords) -> list[str]:
    """Return configured keywords contained in `text`, case-insensitively.

    Matching is substring based so obfuscations such as a keyword embedded
    in a longer token are still caught.
    """
    haystack = normalize_text(text)
    if not haystack:
        return []
    found: list[str] = []
    for kw in keywords:
        needle = normalize_text(kw)
        if needle and needle in haystack and needle not in found:
            found.append(needle)
    return found
