from __future__ import annotations

from metaphone import doublemetaphone


def double_metaphone(value: str) -> tuple[str, str]:
    """Primary and secondary Double Metaphone codes; missing codes are empty strings."""
    primary, secondary = doublemetaphone(value or "")
    return primary or "", secondary or ""


def phonetic_codes(value: str) -> set[str]:
    return {code for code in double_metaphone(value) if code}
