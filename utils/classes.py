from __future__ import annotations

import re
from typing import Optional

from extensions import db
from models import SchoolClass

TERMINAL_LEVEL = 12

_EXPLICIT_MAP = {
    # Early years
    "pre-nursery": "Nursery",
    "playgroup": "Nursery",
    "nursery": "LKG",
    "lkg": "UKG",
    "ukg": "Class 1",
    "kg1": "KG2",
    "kg2": "Class 1",
}

_ORDINAL = re.compile(r"^(\d{1,2})(st|nd|rd|th)\s+(grade|class|std|standard)$")


def _ordinal_suffix(num: int) -> str:
    if 10 <= num % 100 <= 20:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(num % 10, "th")


def next_class_name(current: Optional[str]) -> Optional[str]:
    """Return the next class label for a given class name.

    Class 12 (in any naming style) is the terminal level and returns None,
    meaning the student graduates. Unknown formats return None as well.
    """
    if not current:
        return None
    text = str(current).strip().lower()
    if not text:
        return None

    if text in _EXPLICIT_MAP:
        return _EXPLICIT_MAP[text]

    m = re.match(r"^(grade|class|std|standard)\s*[-]?\s*(\d{1,2})$", text)
    if m:
        kind, num = m.group(1), int(m.group(2))
        if num >= TERMINAL_LEVEL:
            return None
        label = "Std" if kind == "std" else kind.title()
        return f"{label} {num + 1}"

    m = _ORDINAL.match(text)
    if m:
        num, kind = int(m.group(1)), m.group(3)
        if num >= TERMINAL_LEVEL:
            return None
        return f"{num + 1}{_ordinal_suffix(num + 1)} {kind.title()}"

    # Bare numbers and other "<prefix> N" styles
    m = re.match(r"^(.*?)\s*(\d{1,2})$", text)
    if m:
        prefix, num = m.group(1).strip(), int(m.group(2))
        if num >= TERMINAL_LEVEL:
            return None
        return f"{prefix} {num + 1}".strip().title() if prefix else str(num + 1)

    return None


def get_next_class_id(current_class_id) -> Optional[int]:
    """Id of the class a student moves into, preferring the same section."""
    current = db.session.get(SchoolClass, current_class_id) if current_class_id is not None else None
    if current is None:
        return None
    target_name = next_class_name(current.name)
    if not target_name:
        return None
    candidates = [
        c for c in SchoolClass.query.order_by(SchoolClass.section, SchoolClass.id).all()
        if c.name.strip().lower() == target_name.lower()
    ]
    if not candidates:
        return None
    for candidate in candidates:
        if (candidate.section or "") == (current.section or ""):
            return candidate.id
    return candidates[0].id
