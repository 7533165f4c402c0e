from __future__ import annotations

import re
from datetime import date
from typing import Any

from funding_ingest.schemas.records import AMOUNT_FIELDS, CRITICAL_FIELDS, DATE_FIELDS, ExistingRecord, Record

_NON_WORD_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_title(title: str | None) -> str:
    if not title:
        return ""
    lowered = _NON_WORD_RE.sub(" ", title.lower())
    return _WHITESPACE_RE.sub(" ", lowered).strip()


def titles_are_similar(left: str | None, right: str | None, *, threshold: float = 0.7) -> bool:
    """Fuzzy title equality used to validate identifier matches.

    Exact match after trimming wins outright. Otherwise the normalized
    titles are similar when one contains the other, or when their sets of
    words longer than three characters overlap by at least ``threshold``
    (Jaccard).
    """
    if not left or not right:
        return False
    if left.strip() == right.strip():
        return True

    normalized_left = normalize_title(left)
    normalized_right = normalize_title(right)
    if not normalized_left or not normalized_right:
        return False
    if normalized_left in normalized_right or normalized_right in normalized_left:
        return True

    return _jaccard(_significant_words(normalized_left), _significant_words(normalized_right)) >= threshold


def amount_changed(old: float | None, new: float | None, *, tolerance: float) -> bool:
    if old is None and new is None:
        return False
    if old is None or new is None:
        return True
    if old == 0 and new == 0:
        return False
    if old == 0 or new == 0:
        return True
    return abs(new - old) / abs(old) > tolerance


def date_changed(old: date | None, new: date | None) -> bool:
    return old != new


def text_changed(old: str | None, new: str | None) -> bool:
    return (old or "").strip().lower() != (new or "").strip().lower()


def changed_critical_fields(existing: ExistingRecord, record: Record, *, tolerance: float = 0.05) -> list[str]:
    changed: list[str] = []
    for name in CRITICAL_FIELDS:
        old = getattr(existing, name)
        new = getattr(record, name)
        if name in AMOUNT_FIELDS:
            differs = amount_changed(old, new, tolerance=tolerance)
        elif name in DATE_FIELDS:
            differs = date_changed(old, new)
        else:
            differs = text_changed(old, new)
        if differs:
            changed.append(name)
    return changed


def prepare_critical_field_update(existing: ExistingRecord, record: Record) -> dict[str, Any]:
    """Return the critical fields to write for an UPDATE.

    Empty incoming values never overwrite stored data, and only values that
    actually differ from the stored ones are kept.
    """
    updates: dict[str, Any] = {}
    for name in CRITICAL_FIELDS:
        new = getattr(record, name)
        if new is None or (isinstance(new, str) and not new.strip()):
            continue
        old = getattr(existing, name)
        if name in AMOUNT_FIELDS:
            differs = old is None or float(old) != float(new)
        else:
            differs = old != new
        if differs:
            updates[name] = new
    return updates


def _significant_words(normalized: str) -> set[str]:
    return {word for word in normalized.split(" ") if len(word) > 3}


def _jaccard(left: set[str], right: set[str]) -> float:
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)
