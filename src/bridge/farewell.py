"""Leave-taking phrase detection for completed utterance transcripts."""

from __future__ import annotations

import re
from collections.abc import Iterable

# Regex fragments per language; matched case-insensitively on word boundaries.
FAREWELL_PATTERNS: dict[str, tuple[str, ...]] = {
    "hr": (
        r"dovi[đd]enja?",
        r"bok",
        r"to je sve",
        r"hvala.*dovi",
        r"vidimo se",
        r"lijep? pozdrav",
        r"čujemo se",
    ),
    "bs": (r"dovi[đd]enja?", r"to je sve", r"vidimo se", r"prijatno", r"[cć]ao"),
    "sr": (r"dovi[đd]enja?", r"to je sve", r"vidimo se", r"prijatno", r"[cć]ao", r"čujemo se"),
    "sl": (r"nasvidenje", r"adijo", r"to je vse", r"lep pozdrav", r"se vidimo", r"se slišimo"),
    "en": (
        r"good\s?bye",
        r"bye(?:[- ]bye)?",
        r"that[’']?s all",
        r"that is all",
        r"talk soon",
        r"talk to you (?:later|soon)",
        r"see you(?: later| soon)?",
    ),
    "de": (
        r"auf wiederseh[e]?n",
        r"auf wiederh[öo]ren",
        r"tsch[üu]ss?",
        r"das war[’']?s",
        r"bis bald",
        r"ciao",
    ),
}


class FarewellMatcher:
    """Case-insensitive matcher for a locale's leave-taking expressions.

    Unknown locales fall back to English. Extra phrases are matched literally.
    """

    def __init__(self, locale: str = "hr", extra_phrases: Iterable[str] = ()) -> None:
        self.locale = locale if locale in FAREWELL_PATTERNS else "en"
        patterns = list(FAREWELL_PATTERNS[self.locale])
        patterns.extend(re.escape(phrase.strip()) for phrase in extra_phrases if phrase and phrase.strip())
        self._regex = re.compile(r"\b(?:" + "|".join(patterns) + r")\b", re.IGNORECASE)

    def find(self, text: str | None) -> str | None:
        if not text:
            return None
        match = self._regex.search(text)
        return match.group(0) if match else None

    def matches(self, text: str | None) -> bool:
        return self.find(text) is not None
