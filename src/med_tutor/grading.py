"""Behavior-to-grade mapping shared by every content type."""
from typing import Optional

from med_tutor.config import EngineSettings, get_settings
from med_tutor.errors import ValidationError
from med_tutor.models import ContentItem, Flashcard, MicroCase, Quiz

MIN_GRADE = 0
MAX_GRADE = 5
PASSING_GRADE = 3


def validate_grade(grade) -> int:
    """Return grade unchanged if it is an integer 0-5, else raise ValidationError."""
    if isinstance(grade, bool) or not isinstance(grade, int):
        raise ValidationError(f"Grade must be an integer, got {grade!r}")
    if not MIN_GRADE <= grade <= MAX_GRADE:
        raise ValidationError(f"Grade must be between {MIN_GRADE} and {MAX_GRADE}, got {grade}")
    return grade


def _validate_effort(time_spent_seconds: float, hints_used: int) -> None:
    if time_spent_seconds < 0:
        raise ValidationError(f"time_spent_seconds cannot be negative: {time_spent_seconds}")
    if isinstance(hints_used, bool) or not isinstance(hints_used, int) or hints_used < 0:
        raise ValidationError(f"hints_used must be a non-negative integer: {hints_used!r}")


def apply_hint_penalty(grade: int, hints_used: int) -> int:
    """Lower a grade by one step per hint.

    A passing grade never drops below PASSING_GRADE and a failing grade
    never below 0, so hints change how well an item went but never whether
    it was recalled.
    """
    floor = PASSING_GRADE if grade >= PASSING_GRADE else MIN_GRADE
    return max(floor, grade - hints_used)


def behavior_to_grade(
    correct: bool,
    time_spent_seconds: float,
    hints_used: int,
    expected_seconds: float,
    settings: Optional[EngineSettings] = None,
) -> int:
    """Derive a 0-5 grade for a quiz or flashcard answer.

    Args:
        correct: Whether the learner answered correctly
        time_spent_seconds: Time taken to answer
        hints_used: Number of hints revealed before answering
        expected_seconds: Baseline answer time for the item

    Returns:
        Grade 0-5. Correct answers start at 5 and lose a step at each
        time-ratio threshold crossed; wrong answers start at 2. The hint
        penalty is applied last.
    """
    settings = settings or get_settings()
    _validate_effort(time_spent_seconds, hints_used)
    if expected_seconds <= 0:
        raise ValidationError(f"expected_seconds must be positive: {expected_seconds}")

    if correct:
        ratio = time_spent_seconds / expected_seconds
        grade = MAX_GRADE
        if ratio >= settings.fast_time_ratio:
            grade -= 1
        if ratio >= settings.slow_time_ratio:
            grade -= 1
    else:
        grade = PASSING_GRADE - 1
    return apply_hint_penalty(grade, hints_used)


def self_assessed_grade(grade: int, hints_used: int = 0) -> int:
    """Grade for a free-form micro-case: the learner's own 0-5 rating, less hints."""
    validate_grade(grade)
    _validate_effort(0, hints_used)
    return apply_hint_penalty(grade, hints_used)


def grade_item(
    item: ContentItem,
    correct: Optional[bool] = None,
    time_spent_seconds: float = 0.0,
    hints_used: int = 0,
    self_assessment: Optional[int] = None,
    settings: Optional[EngineSettings] = None,
) -> int:
    """Grade an answer according to the kind of content it was given on."""
    if isinstance(item, MicroCase):
        if self_assessment is None:
            raise ValidationError(f"Micro-case {item.content_id} needs a self assessment")
        return self_assessed_grade(self_assessment, hints_used)
    if isinstance(item, (Quiz, Flashcard)):
        if not isinstance(correct, bool):
            raise ValidationError(f"{item.content_type.value} {item.content_id} needs correct=True/False")
        return behavior_to_grade(
            correct, time_spent_seconds, hints_used, item.expected_seconds, settings
        )
    raise ValidationError(f"Unsupported content item: {type(item).__name__}")
