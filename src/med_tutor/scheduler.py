"""Stability-based spaced repetition scheduling for review cards."""
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from loguru import logger

from med_tutor.config import EngineSettings, get_settings
from med_tutor.errors import OwnershipError, StateConflictError, ValidationError
from med_tutor.grading import PASSING_GRADE, validate_grade
from med_tutor.models import ContentItem, ReviewCard, ReviewResult

# Share of the growth factor earned per passing grade.
GRADE_MULTIPLIERS = {3: 0.6, 4: 1.0, 5: 1.3}


def make_card_id(learner_id: str, content_id: str) -> str:
    return f"{learner_id}:{content_id}"


def new_card(
    learner_id: str,
    item: ContentItem,
    now: Optional[datetime] = None,
    settings: Optional[EngineSettings] = None,
) -> ReviewCard:
    """Create the card for the first time a learner sees a content item. Due immediately."""
    settings = settings or get_settings()
    now = now or datetime.now()
    return ReviewCard(
        card_id=make_card_id(learner_id, item.content_id),
        learner_id=learner_id,
        content_id=item.content_id,
        content_type=item.content_type,
        domain=item.domain,
        stability=settings.initial_stability,
        difficulty=settings.initial_difficulty,
        due_date=now.date(),
        created_at=now,
        interval_days=settings.min_interval_days,
    )


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _difficulty_weight(difficulty: float, settings: EngineSettings) -> float:
    """1.0 for the easiest card, falling to 0.5 for the hardest."""
    span = settings.max_difficulty - settings.min_difficulty
    return 1.0 - (difficulty - settings.min_difficulty) / span * 0.5


def review(
    card: ReviewCard,
    grade: int,
    time_spent_seconds: float,
    hints_used: int,
    learner_id: str,
    now: Optional[datetime] = None,
    settings: Optional[EngineSettings] = None,
) -> tuple[ReviewCard, ReviewResult]:
    """Apply a grade to a card and compute its next state.

    Args:
        card: The card being reviewed (left untouched)
        grade: 0-5, 3 and above counts as recalled
        time_spent_seconds: Time the learner spent on the item
        hints_used: Hints revealed during the review
        learner_id: Learner performing the review, must own the card
        now: Review timestamp, defaults to the current time

    Returns:
        Tuple of the updated card and a ReviewResult describing the change.
    """
    settings = settings or get_settings()
    now = now or datetime.now()

    validate_grade(grade)
    if time_spent_seconds < 0:
        raise ValidationError(f"time_spent_seconds cannot be negative: {time_spent_seconds}")
    if hints_used < 0:
        raise ValidationError(f"hints_used cannot be negative: {hints_used}")
    if card.learner_id != learner_id:
        raise OwnershipError(f"Card {card.card_id} does not belong to learner {learner_id}")
    if card.retired:
        raise StateConflictError(f"Card {card.card_id} is retired")
    if card.last_reviewed_at is not None and now < card.last_reviewed_at:
        raise ValidationError(
            f"Review at {now.isoformat()} precedes last review {card.last_reviewed_at.isoformat()}"
        )

    passed = grade >= PASSING_GRADE
    difficulty = card.difficulty
    became_leech = False
    leech_cleared = False

    if passed:
        weight = _difficulty_weight(card.difficulty, settings)
        growth = settings.stability_growth * weight * GRADE_MULTIPLIERS[grade]
        stability = card.stability * (1 + growth)
        interval = max(card.interval_days + 1, round(stability))
        interval = min(settings.max_interval_days, interval)
        fail_count = card.fail_count
        streak = card.success_streak + 1
        is_leech = card.is_leech
        if is_leech and streak >= settings.leech_clear_streak:
            # Clearing starts a fresh leech count.
            is_leech = False
            fail_count = 0
            leech_cleared = True
        if grade == 5:
            difficulty -= settings.difficulty_easy_step
    else:
        stability = max(settings.min_stability, card.stability * settings.failure_stability_factor)
        interval = settings.min_interval_days
        fail_count = card.fail_count + 1
        streak = 0
        is_leech = card.is_leech
        if not is_leech and fail_count >= settings.leech_threshold:
            is_leech = True
            became_leech = True
        difficulty += settings.difficulty_fail_step

    difficulty = _clamp(difficulty, settings.min_difficulty, settings.max_difficulty)
    due = now.date() + timedelta(days=interval)

    updated = replace(
        card,
        stability=round(stability, 4),
        difficulty=round(difficulty, 4),
        interval_days=interval,
        due_date=due,
        last_reviewed_at=now,
        review_count=card.review_count + 1,
        fail_count=fail_count,
        success_streak=streak,
        is_leech=is_leech,
    )
    if became_leech:
        logger.warning(f"Card {card.card_id} flagged as leech after {fail_count} failures")
    elif leech_cleared:
        logger.info(f"Card {card.card_id} cleared leech status after {streak} successes")

    result = ReviewResult(
        card_id=card.card_id,
        grade=grade,
        passed=passed,
        previous_interval=card.interval_days,
        interval_days=interval,
        due_date=due,
        reviewed_at=now,
        time_spent_seconds=time_spent_seconds,
        hints_used=hints_used,
        became_leech=became_leech,
        leech_cleared=leech_cleared,
    )
    return updated, result


def overdue_days(card: ReviewCard, today: date) -> int:
    return max(0, (today - card.due_date).days)


def due_cards(cards: Iterable[ReviewCard], today: date) -> list[ReviewCard]:
    """Cards due on or before today, most overdue first, leeches first on ties."""
    due = [c for c in cards if not c.retired and c.due_date <= today]
    due.sort(key=lambda c: (-overdue_days(c, today), not c.is_leech, c.card_id))
    return due


def leech_cards(cards: Iterable[ReviewCard]) -> list[ReviewCard]:
    return [c for c in cards if c.is_leech and not c.retired]


def reset_card(
    card: ReviewCard,
    now: Optional[datetime] = None,
    settings: Optional[EngineSettings] = None,
) -> ReviewCard:
    """Manual reset: forget scheduling progress and make the card due today.

    This is the only path that moves a due date earlier. Failure and leech
    history are kept.
    """
    settings = settings or get_settings()
    now = now or datetime.now()
    logger.info(f"Card {card.card_id} manually reset")
    return replace(
        card,
        stability=settings.initial_stability,
        difficulty=settings.initial_difficulty,
        interval_days=settings.min_interval_days,
        due_date=now.date(),
        success_streak=0,
    )


def retire_card(card: ReviewCard) -> ReviewCard:
    """Mark a card superseded when its content is withdrawn. Cards are never deleted."""
    return replace(card, retired=True)
