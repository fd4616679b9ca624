from __future__ import annotations

import re
from typing import Literal, Sequence

from pydantic import BaseModel, ConfigDict

from loadout_ocr.models import ExtractedField

RE_SPACES = re.compile(r"\s+")
RE_NON_DIGITS = re.compile(r"\D")

# Glyphs OCR commonly emits in place of digits inside a number.
DIGIT_CONFUSABLES = str.maketrans({"O": "0", "o": "0", "Q": "0", "D": "0", "I": "1", "l": "1", "|": "1"})


class FieldRule(BaseModel):
    """One pattern in an ordered field-extraction rule list.

    Attributes:
      pattern: Compiled regex. Use inline flags such as ``(?i)`` in config files.
      group: Capture group holding the field value (index or name).
      pick: "first" takes the first match, "longest" takes the match with the
        most digits (the earliest one on a tie).
      digits_only: Strip everything except digits from the captured value,
        after correcting common OCR digit confusions.
    """

    model_config = ConfigDict(frozen=True)

    pattern: re.Pattern[str]
    group: int | str = 1
    pick: Literal["first", "longest"] = "first"
    digits_only: bool = True


def normalize_whitespace(text: str) -> str:
    """Collapse every whitespace run (newlines included) to a single space."""
    return re.sub(RE_SPACES, " ", text or "").strip()


def clean_numeric_token(raw_token: str) -> str:
    """Turn an OCR number token into bare digits.

    Letters that look like digits are only corrected after the first real digit,
    so a label such as "Damage" is never read as a number.

    Args:
      raw_token: Captured token such as "123,45O".

    Returns:
      The digits of the token, possibly an empty string.
    """
    first_digit = re.search(r"\d", raw_token or "")
    if first_digit is None:
        return ""
    tail = raw_token[first_digit.start() :].translate(DIGIT_CONFUSABLES)
    return re.sub(RE_NON_DIGITS, "", tail)


def _candidate(match: re.Match[str], rule: FieldRule) -> str:
    captured = match.group(rule.group) or ""
    return clean_numeric_token(captured) if rule.digits_only else captured.strip()


def apply_rule(text: str, rule: FieldRule) -> str | None:
    """Apply a single rule to already normalized text.

    Returns:
      The extracted value, or None if the rule produced nothing usable.
    """
    if rule.pick == "first":
        for match in rule.pattern.finditer(text):
            value = _candidate(match, rule)
            if value:
                return value
        return None

    best: str | None = None
    best_digits = 0
    for match in rule.pattern.finditer(text):
        value = _candidate(match, rule)
        digits = sum(ch.isdigit() for ch in value) if value else 0
        if value and (best is None or digits > best_digits):
            best, best_digits = value, digits
    return best


def parse_field(raw_text: str, rules: Sequence[FieldRule], region_name: str = "") -> ExtractedField:
    """Extract a field from raw OCR text using ordered fallback rules.

    The text is whitespace-normalized, then each rule is tried in declared
    order; the first one that yields a value wins. Finding nothing is a normal
    outcome and is reported as ``value=None``.

    Args:
      raw_text: Text returned by the OCR engine, possibly empty.
      rules: Rules in priority order.
      region_name: Region the text was read from, carried into the result.

    Returns:
      ExtractedField with the raw text and the parsed value (or None).
    """
    text = normalize_whitespace(raw_text)
    value: str | None = None
    if text:
        for rule in rules:
            value = apply_rule(text, rule)
            if value is not None:
                break
    return ExtractedField(region_name=region_name, raw_text=raw_text or "", value=value)
