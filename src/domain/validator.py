"""Reply validation against a block's options.

Matching is deterministic: a normalized exact label match (first in list
order wins), otherwise a bare positive integer picked as a 1-based ordinal.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Sequence

from domain.script import Option

_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s]")
_ORDINAL = re.compile(r"^[0-9]+$")


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of matching one reply."""

    is_valid: bool
    option: Optional[Option] = None
    index: Optional[int] = None
    normalized_input: str = ""

    def to_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "option": self.option.text if self.option else None,
            "index": self.index,
            "normalized_input": self.normalized_input,
        }


def normalize_input(text: Optional[str]) -> str:
    """Trim, lower-case, collapse whitespace and drop punctuation."""
    if not text:
        return ""
    normalized = _WHITESPACE.sub(" ", text.strip().lower())
    return _PUNCTUATION.sub("", normalized).strip()


def validate_response(text: Optional[str], options: Sequence[Option]) -> ValidationResult:
    """
    Match raw user text to one of ``options``.

    Empty input never matches, even against an option whose label normalizes
    to nothing.
    """
    normalized = normalize_input(text)
    if not normalized or not options:
        return ValidationResult(is_valid=False, normalized_input=normalized)

    for index, option in enumerate(options):
        if normalize_input(option.text) == normalized:
            return ValidationResult(
                is_valid=True, option=option, index=index, normalized_input=normalized
            )

    if _ORDINAL.match(normalized):
        index = int(normalized) - 1
        if 0 <= index < len(options):
            return ValidationResult(
                is_valid=True, option=options[index], index=index, normalized_input=normalized
            )

    return ValidationResult(is_valid=False, normalized_input=normalized)


__all__ = ["ValidationResult", "normalize_input", "validate_response"]
