# src/taskkeep/tasks/validation.py

from __future__ import annotations

import unicodedata
from typing import Any

from ..core.errors import ValidationError
from .task_models import ValidationResult

MAX_TASK_TEXT_LENGTH = 280


def _find_control_chars(text: str) -> list[str]:
    return sorted({f"U+{ord(ch):04X}" for ch in text if unicodedata.category(ch) == "Cc"})


def validate_task_text(text: Any) -> ValidationResult:
    """Non-raising check. Reports every problem found, measured after trimming."""
    if not isinstance(text, str):
        return ValidationResult(False, [f"Task text must be a string, got {type(text).__name__}."])

    errors: list[str] = []
    trimmed = text.strip()

    if not trimmed:
        errors.append("Task text cannot be empty.")
    elif len(trimmed) > MAX_TASK_TEXT_LENGTH:
        errors.append(
            f"Task text is too long ({len(trimmed)} characters, max {MAX_TASK_TEXT_LENGTH})."
        )

    bad = _find_control_chars(trimmed)
    if bad:
        errors.append(f"Task text contains control characters: {', '.join(bad)}.")

    return ValidationResult(not errors, errors)


def normalize_task_text(text: Any) -> str:
    """Return trimmed text or raise ValidationError."""
    result = validate_task_text(text)
    if not result.is_valid:
        raise ValidationError(result.errors)
    return text.strip()
