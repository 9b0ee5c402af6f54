"""Recovery monitor: eases difficulty after a run of hard days."""
from dataclasses import replace
from datetime import date
from typing import Optional

from loguru import logger

from med_tutor.bands import shift_band
from med_tutor.config import EngineSettings, get_settings
from med_tutor.errors import ValidationError
from med_tutor.models import Band, DayOutcome, RecoveryState


def classify_day(outcome: DayOutcome, settings: Optional[EngineSettings] = None) -> bool:
    """A day is difficult when accuracy is low or hint usage is unusually high."""
    settings = settings or get_settings()
    if outcome.total == 0:
        return False
    return (
        outcome.accuracy < settings.difficult_day_accuracy
        or outcome.hints_per_item > settings.difficult_day_hint_rate
    )


def _merge(history: list[DayOutcome], outcome: DayOutcome) -> list[DayOutcome]:
    if not history:
        return [outcome]
    last = history[-1]
    if outcome.day < last.day:
        raise ValidationError(f"Day outcome for {outcome.day} arrives after {last.day}")
    if outcome.day == last.day:
        merged = DayOutcome(
            day=last.day,
            correct=last.correct + outcome.correct,
            total=last.total + outcome.total,
            hints_used=last.hints_used + outcome.hints_used,
        )
        return history[:-1] + [merged]
    return history + [outcome]


def observe(
    state: RecoveryState,
    outcome: DayOutcome,
    settings: Optional[EngineSettings] = None,
) -> RecoveryState:
    """Fold a day's results into the recovery window.

    Sessions on the same day are merged into one day entry. Recovery turns
    on after recovery_trigger_days difficult days in a row and turns off on
    a later day that is not difficult and reaches recovery_exit_accuracy.

    Returns:
        The new state; its ``active`` flag is the recovery decision.
    """
    settings = settings or get_settings()
    if outcome.total < 0 or outcome.correct < 0 or outcome.correct > outcome.total:
        raise ValidationError(f"Malformed day outcome: {outcome.correct}/{outcome.total}")
    if outcome.hints_used < 0:
        raise ValidationError(f"Malformed day outcome: hints_used={outcome.hints_used}")

    history = _merge(state.history, outcome)
    today = history[-1]
    today = replace(today, difficult=classify_day(today, settings))
    history = (history[:-1] + [today])[-settings.recovery_history_days:]
    updated = replace(state, history=history)

    if state.active:
        recovered = (
            not today.difficult
            and today.accuracy >= settings.recovery_exit_accuracy
            and (state.activated_on is None or today.day > state.activated_on)
        )
        if recovered:
            logger.info(f"Recovery mode off after {today.accuracy:.0%} on {today.day}")
            return replace(updated, active=False, manual=False, activated_on=None)
        return updated

    trailing = history[-settings.recovery_trigger_days:]
    if len(trailing) == settings.recovery_trigger_days and all(d.difficult for d in trailing):
        logger.info(f"Recovery mode on after {len(trailing)} difficult days")
        return replace(updated, active=True, manual=False, activated_on=today.day)
    return updated


def request_recovery(state: RecoveryState, today: date) -> RecoveryState:
    """Learner-requested recovery, honored immediately regardless of history."""
    if state.active:
        return replace(state, manual=True)
    logger.info(f"Recovery mode requested on {today}")
    return replace(state, active=True, manual=True, activated_on=today)


def effective_band(band: Band, recovery_active: bool) -> Band:
    """The band content is served at: one step easier while recovering."""
    return shift_band(band, -1) if recovery_active else band
