"""
pipelines/agents/keywords.py

Fixed multilingual emergency vocabulary (English, Hindi, Tamil, Telugu,
Bengali) shared by the fallback rules of every stage.
"""

from __future__ import annotations

EMERGENCY_TERMS: dict[str, tuple[str, ...]] = {
    "chest_pain": ("chest pain", "छाती", "நெஞ்சு", "గుండె", "বুকে"),
    "breathing_difficulty": ("breathing", "सांस", "மூச்சு", "శ్వాస", "শ্বাস"),
    "unconscious": ("unconscious", "बेहोश", "மயக்கம்", "స్పృహ", "অজ্ঞান"),
    "severe": ("severe", "तेज़", "கடுமையான", "తీవ్రమైన", "প্রচণ্ড"),
}


def matches_category(text: str, category: str) -> bool:
    lowered = text.lower()
    return any(term in lowered for term in EMERGENCY_TERMS[category])


def detect_emergency_keywords(text: str) -> list[str]:
    """Every table term found in *text*, in table order, without duplicates."""
    lowered = text.lower()
    found: list[str] = []
    for terms in EMERGENCY_TERMS.values():
        for term in terms:
            if term in lowered and term not in found:
                found.append(term)
    return found


def merge_keywords(primary: list[str], extra: list[str]) -> list[str]:
    """Order-preserving, case-insensitive union."""
    seen = {k.lower() for k in primary}
    merged = list(primary)
    for k in extra:
        if k.lower() not in seen:
            seen.add(k.lower())
            merged.append(k)
    return merged
