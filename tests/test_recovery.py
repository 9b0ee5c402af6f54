from datetime import date, timedelta

import pytest

from med_tutor.errors import ValidationError
from med_tutor.models import Band, DayOutcome, RecoveryState
from med_tutor.recovery import classify_day, effective_band, observe, request_recovery

DAY = date(2026, 3, 2)


def day(offset, correct, total=10, hints=0):
    return DayOutcome(day=DAY + timedelta(days=offset), correct=correct, total=total, hints_used=hints)


def test_classify_day(settings):
    assert classify_day(day(0, 5), settings)
    assert not classify_day(day(0, 6), settings)
    assert classify_day(day(0, 9, hints=20), settings)
    assert not classify_day(day(0, 0, total=0), settings)


def test_two_difficult_days_activate_recovery(settings):
    state = observe(RecoveryState(), day(0, 4), settings)
    assert not state.active
    state = observe(state, day(1, 5), settings)
    assert state.active
    assert not state.manual
    assert state.activated_on == DAY + timedelta(days=1)


def test_easy_day_breaks_the_run(settings):
    state = RecoveryState()
    for offset, correct in enumerate([4, 8, 4]):
        state = observe(state, day(offset, correct), settings)
    assert not state.active


def test_sessions_on_same_day_merge(settings):
    state = observe(RecoveryState(), day(0, 2, total=5), settings)
    state = observe(state, day(0, 5, total=5), settings)
    assert len(state.history) == 1
    assert state.history[0].total == 10
    assert not state.history[0].difficult


def test_history_is_bounded(settings):
    state = RecoveryState()
    for offset in range(6):
        state = observe(state, day(offset, 9), settings)
    assert len(state.history) == settings.recovery_history_days


def test_recovery_ends_after_a_good_day(settings):
    state = RecoveryState(active=True, activated_on=DAY)
    state = observe(state, day(1, 6), settings)
    assert state.active  # not difficult, but below the exit threshold
    state = observe(state, day(2, 8), settings)
    assert not state.active
    assert state.activated_on is None


def test_good_session_on_activation_day_keeps_recovery(settings):
    state = RecoveryState(active=True, manual=True, activated_on=DAY)
    state = observe(state, day(0, 10), settings)
    assert state.active


def test_manual_request_is_immediate(settings):
    state = request_recovery(RecoveryState(), DAY)
    assert state.active
    assert state.manual
    assert state.activated_on == DAY


def test_out_of_order_day_rejected(settings):
    state = observe(RecoveryState(), day(3, 5), settings)
    with pytest.raises(ValidationError):
        observe(state, day(1, 5), settings)


def test_effective_band():
    assert effective_band(Band.C, True) == Band.B
    assert effective_band(Band.C, False) == Band.C
    assert effective_band(Band.A, True) == Band.A
