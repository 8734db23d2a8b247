"""
Output corruption guard.

Generation models occasionally drift into other scripts or emit known garbage
tokens mid-answer. The guard is a pure check: callers decide whether a
rejection means retry, fallback or warn-and-continue.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, Optional, Sequence, Tuple, Union

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Blocks that never belong in an English exam report
DENIED_CHARS = re.compile(
    "["
    "\u0400-\u04ff"  # Cyrillic
    "\u0530-\u058f"  # Armenian
    "\u0590-\u05ff"  # Hebrew
    "\u0600-\u06ff"  # Arabic
    "\u0900-\u0dff"  # Indic scripts, Sinhala
    "\u0e00-\u0e7f"  # Thai
    "\u10a0-\u10ff"  # Georgian
    "\u1100-\u11ff"  # Hangul Jamo
    "\u1200-\u137f"  # Ethiopic
    "\u2600-\u27bf"  # Misc symbols, dingbats
    "\u2b00-\u2bff"  # Misc symbols and arrows
    "\u3000-\u303f"  # CJK symbols and punctuation
    "\u3040-\u30ff"  # Hiragana, Katakana
    "\u3400-\u4dbf"  # CJK extension A
    "\u4e00-\u9fff"  # CJK unified ideographs
    "\uac00-\ud7af"  # Hangul syllables
    "\uf900-\ufaff"  # CJK compatibility ideographs
    "\uff00-\uffef"  # Half/full-width forms
    "\ufffd"  # Replacement character (mojibake)
    "\U0001f000-\U0001faff"  # Emoji and pictographs
    "]"
)

ALLOWED_SYMBOLS = frozenset("🔥⭐✅❌📚💡🎯📊📝⚡")

GARBAGE_TOKENS = (
    "pochwytliwy",
    "zawieszenie",
    "营",
    "斧",
    "了",
    "我",
    "星守护",
    "交接天下",
    "下车",
)

REPORT_FIELDS = ("metadata", "unit_predictions")
# Generated units may use either spelling for the question lists
UNIT_FIELDS = (("part_a", "partA"), ("part_b", "partB"))

FieldSpec = Union[str, Tuple[str, ...]]


def _serialise(candidate: Any) -> str:
    if isinstance(candidate, BaseModel):
        candidate = candidate.model_dump(mode="json")
    if isinstance(candidate, str):
        return candidate
    # ensure_ascii=False keeps foreign characters visible to the script check
    return json.dumps(candidate, ensure_ascii=False, default=str)


def _as_mapping(candidate: Any) -> Optional[dict]:
    if isinstance(candidate, BaseModel):
        return candidate.model_dump()
    if isinstance(candidate, dict):
        return candidate
    return None


def _field_present(mapping: dict, field: FieldSpec) -> bool:
    names = (field,) if isinstance(field, str) else field
    return any(mapping.get(name) is not None for name in names)


class OutputValidator:
    def __init__(self, *, garbage_tokens: Iterable[str] = GARBAGE_TOKENS, allowed_symbols: Iterable[str] = ALLOWED_SYMBOLS) -> None:
        self.garbage_tokens = tuple(garbage_tokens)
        self.allowed_symbols = frozenset(allowed_symbols)

    def find_foreign_chars(self, text: str) -> list[str]:
        return [ch for ch in DENIED_CHARS.findall(text) if ch not in self.allowed_symbols]

    def validate(self, candidate: Any, required_fields: Sequence[FieldSpec] = REPORT_FIELDS) -> bool:
        """Return True when the candidate is free of corruption and structurally complete.

        Structural completeness only requires each field to be present; empty
        values pass. The unit count is not compared with metadata.total_units,
        so partial results pass.
        """
        text = _serialise(candidate)

        foreign = self.find_foreign_chars(text)
        if foreign:
            logger.error("Output rejected: foreign script detected (%r)", "".join(foreign[:10]))
            return False

        for token in self.garbage_tokens:
            if token in text:
                logger.error("Output rejected: hallucination token %r detected", token)
                return False

        mapping = _as_mapping(candidate)
        if mapping is None:
            logger.error("Output rejected: expected an object, got %s", type(candidate).__name__)
            return False
        missing = [
            field if isinstance(field, str) else field[0] for field in required_fields if not _field_present(mapping, field)
        ]
        if missing:
            logger.error("Output rejected: missing required fields %s", ", ".join(missing))
            return False

        return True

    def validate_unit(self, candidate: Any) -> bool:
        return self.validate(candidate, required_fields=UNIT_FIELDS)

    def sanitize(self, text: str) -> str:
        """Best-effort cleanup: drop denied characters but keep allow-listed symbols."""
        return DENIED_CHARS.sub(lambda m: m.group(0) if m.group(0) in self.allowed_symbols else "", text)
