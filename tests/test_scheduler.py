from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from med_tutor.errors import OwnershipError, StateConflictError, ValidationError
from med_tutor.models import Band, Quiz
from med_tutor.scheduler import (
    due_cards,
    leech_cards,
    new_card,
    reset_card,
    retire_card,
    review,
)

NOW = datetime(2026, 3, 2, 9, 0)
LEARNER = "learner-1"


def make_card(settings, content_id="q1"):
    return new_card(LEARNER, Quiz(content_id, "knee", Band.C), NOW, settings)


def test_new_card_is_due_immediately(settings):
    card = make_card(settings)
    assert card.card_id == "learner-1:q1"
    assert card.due_date == NOW.date()
    assert card.interval_days == 1
    assert card.review_count == 0


def test_success_grows_interval_and_moves_due_date_forward(settings):
    card = make_card(settings)
    updated, result = review(card, 4, 30, 0, LEARNER, NOW, settings)
    assert result.passed
    assert updated.interval_days > card.interval_days
    assert updated.due_date == NOW.date() + timedelta(days=updated.interval_days)
    assert updated.due_date > card.due_date
    assert updated.stability > card.stability
    assert updated.review_count == 1
    assert updated.fail_count == 0


def test_five_perfect_reviews(settings):
    """Grade 5 five times: never a leech, no failures, intervals strictly increasing."""
    card = make_card(settings)
    now = NOW
    intervals = []
    for _ in range(5):
        card, _ = review(card, 5, 10, 0, LEARNER, now, settings)
        intervals.append(card.interval_days)
        now = now + timedelta(days=card.interval_days)
    assert card.is_leech is False
    assert card.fail_count == 0
    assert all(a < b for a, b in zip(intervals, intervals[1:]))
    assert card.review_count == 5


def test_harder_cards_gain_stability_more_slowly(settings):
    easy = replace(make_card(settings), difficulty=2.0)
    hard = replace(make_card(settings), difficulty=9.0)
    easy_after, _ = review(easy, 4, 30, 0, LEARNER, NOW, settings)
    hard_after, _ = review(hard, 4, 30, 0, LEARNER, NOW, settings)
    assert easy_after.stability > hard_after.stability


def test_failure_resets_interval_and_counts_once(settings):
    card = replace(make_card(settings), stability=20.0, interval_days=20, review_count=4)
    updated, result = review(card, 1, 30, 0, LEARNER, NOW, settings)
    assert not result.passed
    assert updated.interval_days == settings.min_interval_days
    assert updated.fail_count == card.fail_count + 1
    # Proportional decay, not a reset to the floor.
    assert updated.stability == pytest.approx(20.0 * settings.failure_stability_factor)
    assert updated.difficulty > card.difficulty


def test_stability_never_drops_below_minimum(settings):
    card = replace(make_card(settings), stability=0.12)
    updated, _ = review(card, 0, 30, 0, LEARNER, NOW, settings)
    assert updated.stability == settings.min_stability


def test_card_becomes_leech_at_threshold(settings):
    card = make_card(settings)
    now = NOW
    for i in range(settings.leech_threshold):
        card, result = review(card, 1, 30, 0, LEARNER, now, settings)
        now += timedelta(days=1)
    assert card.is_leech
    assert result.became_leech


def test_leech_clears_after_success_streak(settings):
    card = replace(make_card(settings), fail_count=4, is_leech=True)
    now = NOW
    for _ in range(settings.leech_clear_streak - 1):
        card, _ = review(card, 4, 30, 0, LEARNER, now, settings)
        now += timedelta(days=card.interval_days)
    assert card.is_leech
    card, result = review(card, 4, 30, 0, LEARNER, now, settings)
    assert result.leech_cleared
    assert not card.is_leech
    assert card.fail_count == 0


def test_leech_flag_tracks_failures_since_last_clearing(settings):
    """Mixed grade sequence: flag set iff failures reached the threshold since last clearing."""
    grades = [1, 4, 0, 2, 5, 1, 4, 4, 4, 0, 1, 5, 2, 2, 1, 1]
    card = make_card(settings)
    now = NOW
    since_clear = 0
    flagged = False
    for grade in grades:
        card, result = review(card, grade, 20, 0, LEARNER, now, settings)
        now += timedelta(days=1)
        if grade < 3:
            since_clear += 1
            if since_clear >= settings.leech_threshold:
                flagged = True
        elif result.leech_cleared:
            since_clear = 0
            flagged = False
        assert card.is_leech == flagged


def test_interval_stays_at_ceiling(settings):
    card = replace(make_card(settings), stability=400.0, interval_days=settings.max_interval_days)
    updated, _ = review(card, 5, 10, 0, LEARNER, NOW, settings)
    assert updated.interval_days == settings.max_interval_days


def test_difficulty_stays_within_bounds(settings):
    card = make_card(settings)
    now = NOW
    for _ in range(12):
        card, _ = review(card, 0, 30, 0, LEARNER, now, settings)
        now += timedelta(days=1)
    assert card.difficulty == settings.max_difficulty
    for _ in range(40):
        card, _ = review(card, 5, 5, 0, LEARNER, now, settings)
        now += timedelta(days=1)
    assert card.difficulty == settings.min_difficulty


def test_review_does_not_mutate_input(settings):
    card = make_card(settings)
    snapshot = replace(card)
    review(card, 5, 10, 0, LEARNER, NOW, settings)
    assert card == snapshot


def test_invalid_grade_rejected(settings):
    card = make_card(settings)
    with pytest.raises(ValidationError):
        review(card, 6, 10, 0, LEARNER, NOW, settings)
    with pytest.raises(ValidationError):
        review(card, -1, 10, 0, LEARNER, NOW, settings)


def test_negative_effort_rejected(settings):
    card = make_card(settings)
    with pytest.raises(ValidationError):
        review(card, 4, -5, 0, LEARNER, NOW, settings)
    with pytest.raises(ValidationError):
        review(card, 4, 5, -1, LEARNER, NOW, settings)


def test_other_learner_cannot_review(settings):
    with pytest.raises(OwnershipError):
        review(make_card(settings), 4, 10, 0, "someone-else", NOW, settings)


def test_review_before_last_review_rejected(settings):
    card, _ = review(make_card(settings), 4, 10, 0, LEARNER, NOW, settings)
    with pytest.raises(ValidationError):
        review(card, 4, 10, 0, LEARNER, NOW - timedelta(hours=1), settings)


def test_retired_card_cannot_be_reviewed(settings):
    card = retire_card(make_card(settings))
    assert card.retired
    with pytest.raises(StateConflictError):
        review(card, 4, 10, 0, LEARNER, NOW, settings)


def test_due_cards_most_overdue_first_leeches_first_on_ties(settings):
    today = NOW.date()
    a = replace(make_card(settings, "a"), due_date=today - timedelta(days=1))
    b = replace(make_card(settings, "b"), due_date=today - timedelta(days=5))
    c = replace(make_card(settings, "c"), due_date=today - timedelta(days=1), is_leech=True)
    future = replace(make_card(settings, "d"), due_date=today + timedelta(days=3))
    retired = replace(make_card(settings, "e"), due_date=today, retired=True)
    ordered = due_cards([a, b, c, future, retired], today)
    assert [x.content_id for x in ordered] == ["b", "c", "a"]
    assert [x.content_id for x in leech_cards([a, b, c])] == ["c"]


def test_reset_card_makes_card_due_today(settings):
    card = replace(make_card(settings), stability=50.0, interval_days=40,
                   due_date=NOW.date() + timedelta(days=40), fail_count=2)
    reset = reset_card(card, NOW, settings)
    assert reset.due_date == NOW.date()
    assert reset.interval_days == settings.min_interval_days
    assert reset.stability == settings.initial_stability
    assert reset.fail_count == 2
