"""Utility functions for sanitization and validation."""

import math
from typing import Optional

import bleach


def sanitize_question_text(text: str) -> str:
    """Sanitize question text to prevent XSS attacks.

    Allows basic formatting tags but removes script/dangerous content.
    """
    allowed_tags = ['b', 'i', 'u', 'em', 'strong', 'p', 'br', 'code', 'pre', 'ul', 'ol', 'li']
    allowed_attributes = {}

    sanitized = bleach.clean(text, tags=allowed_tags, attributes=allowed_attributes, strip=True)
    return sanitized.strip()


def sanitize_feedback(text: Optional[str]) -> Optional[str]:
    """Sanitize grader feedback, teacher notes and audit reasons.

    Strips all HTML down to plain text. Blank input collapses to None.
    """
    if text is None:
        return None
    sanitized = bleach.clean(text, tags=[], strip=True).strip()
    return sanitized or None


def require_reason(reason: Optional[str]) -> str:
    """Return the sanitized audit reason, rejecting blank ones."""
    cleaned = sanitize_feedback(reason)
    if not cleaned:
        raise ValueError("A reason is required for this action")
    return cleaned


def validate_marks(marks: float, max_marks: float) -> bool:
    """Validate that a score is within [0, max_marks].

    Raises:
        ValueError: If marks exceed valid range or are not a finite number
    """
    if not math.isfinite(marks):
        raise ValueError(f"Marks must be a finite number, got {marks}")
    if marks < 0 or marks > max_marks:
        raise ValueError(
            f"Marks {marks} out of range [0, {max_marks}]"
        )

    return True
