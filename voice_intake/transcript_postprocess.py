# voice_intake/transcript_postprocess.py

import logging
import re
from typing import Mapping, Optional

logger = logging.getLogger("voice_intake")

# recognizer slip -> intended term, whole words only
KNOWN_CORRECTIONS = {
    "ABC": "APC",
    "UBS": "UPS",
    "EPS": "UPS",
    "IPS": "UPS",
    "BIPAP": "BiPAP",
    "Phillips": "Philips",
    "Fillips": "Philips",
    "Simmons": "Siemens",
    "o 2": "O2",
    "oh 2": "O2",
}

PHONETIC_ALPHABET = {
    "ancona": "A", "bari": "B", "como": "C", "domodossola": "D", "empoli": "E",
    "firenze": "F", "genova": "G", "hotel": "H", "imola": "I", "jolly": "J",
    "kappa": "K", "kilo": "K", "livorno": "L", "milano": "M", "napoli": "N",
    "otranto": "O", "padova": "P", "quarto": "Q", "quebec": "Q", "roma": "R",
    "savona": "S", "torino": "T", "udine": "U", "venezia": "V", "washington": "W",
    "xilofono": "X", "york": "Y", "yacht": "Y", "zara": "Z", "zebra": "Z",
}

_CITY = "|".join(sorted(PHONETIC_ALPHABET, key=len, reverse=True))
_SPELLED_LETTER = rf"\b[a-z]\s+come\s+(?:{_CITY})\b"
# "A come Ancona, P come Padova, C come Como" is one run
_SPELLED_RUN = re.compile(rf"{_SPELLED_LETTER}(?:[\s,]+{_SPELLED_LETTER})*", re.IGNORECASE)
_SPELLED_ONE = re.compile(rf"\b[a-z]\s+come\s+({_CITY})\b", re.IGNORECASE)


class TranscriptPostProcessor:
    """
    Cleans finalized recognizer text before it reaches extraction:
    known acronym slips and Italian phonetic spelling ("A come Ancona").
    """

    def __init__(self, corrections: Optional[Mapping[str, str]] = None):
        table = dict(KNOWN_CORRECTIONS)
        table.update(corrections or {})
        self._corrections = [
            (re.compile(rf"\b{re.escape(wrong)}\b", re.IGNORECASE), right)
            for wrong, right in table.items()
            if wrong != right
        ]

    def correct_known_terms(self, text: str) -> str:
        for pattern, right in self._corrections:
            if pattern.search(text):
                logger.debug("transcript correction %s -> %s", pattern.pattern, right)
                text = pattern.sub(right, text)
        return text

    def normalize_spelling(self, text: str) -> str:
        if "come" not in text.lower():
            return text

        def collapse(match: re.Match) -> str:
            return "".join(PHONETIC_ALPHABET[city.lower()] for city in _SPELLED_ONE.findall(match.group(0)))

        return _SPELLED_RUN.sub(collapse, text)

    def process(self, text: str) -> str:
        if not text:
            return text
        text = self.normalize_spelling(text)
        text = self.correct_known_terms(text)
        return re.sub(r"\s+", " ", text).strip()
