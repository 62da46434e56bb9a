"""
Keyword heuristics for incident tagging.

Pure functions of the reporter's free-text message, applied at creation.
The AI classifier is a separate, advisory signal and never overrides them.
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

from backend.app.sos.models import Category, Priority

HIGH_PRIORITY_KEYWORDS: Tuple[str, ...] = (
    "stampede", "crush", "panic", "emergency", "help", "danger",
)

# First matching group wins
CATEGORY_KEYWORDS: Sequence[Tuple[Category, Tuple[str, ...]]] = (
    (Category.STAMPEDE, ("stampede", "crush", "crowd")),
    (Category.FIRE, ("fire", "smoke")),
    (Category.VIOLENCE, ("fight", "violence")),
    (Category.MEDICAL, ("medical", "injury", "hurt")),
)


def determine_priority(message: Optional[str]) -> Priority:
    """
    >>> determine_priority("Crowd panic near gate 3")
    <Priority.HIGH: 'high'>
    >>> determine_priority("Water logging on main road")
    <Priority.MEDIUM: 'medium'>
    """
    text = (message or "").lower()
    if any(keyword in text for keyword in HIGH_PRIORITY_KEYWORDS):
        return Priority.HIGH
    return Priority.MEDIUM


def categorize_incident(message: Optional[str]) -> Category:
    """
    >>> categorize_incident("Smoke coming out of the mall")
    <Category.FIRE: 'fire'>
    >>> categorize_incident("Crowd crush at the station")
    <Category.STAMPEDE: 'stampede'>
    """
    text = (message or "").lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return Category.OTHER
