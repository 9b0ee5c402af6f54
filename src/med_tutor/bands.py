"""Band controller: moves the learner between difficulty tiers A-E."""
from dataclasses import replace
from typing import Optional

from loguru import logger

from med_tutor.config import EngineSettings, get_settings
from med_tutor.errors import ValidationError
from med_tutor.models import BAND_ORDER, Band, BandStatus, BandTransition, SessionPerformance

LEVEL_BANDS = {
    "student": Band.A,
    "at": Band.B,
    "st1": Band.C,
    "st2": Band.C,
    "st3": Band.D,
    "st4": Band.D,
    "st5": Band.E,
    "specialist": Band.E,
}


def shift_band(band: Band, steps: int) -> Band:
    """Move a band by steps, clamped to A..E."""
    index = max(0, min(len(BAND_ORDER) - 1, band.rank + steps))
    return Band(BAND_ORDER[index])


def starting_band(level: str) -> Band:
    """Initial band for a training level (student, at, st1-st5, specialist)."""
    try:
        return LEVEL_BANDS[level.strip().lower()]
    except KeyError:
        raise ValidationError(f"Unknown training level: {level!r}") from None


def initial_band_status(level: str) -> BandStatus:
    return BandStatus(current_band=starting_band(level))


def windowed_accuracy(window: list[SessionPerformance]) -> float:
    total = sum(p.total for p in window)
    if total == 0:
        return 0.0
    return sum(p.correct for p in window) / total


def _validate_outcome(outcome: SessionPerformance) -> None:
    if outcome.total <= 0:
        raise ValidationError(f"Session outcome needs at least one item, got total={outcome.total}")
    if outcome.correct < 0 or outcome.correct > outcome.total:
        raise ValidationError(
            f"Session outcome has correct={outcome.correct} out of total={outcome.total}"
        )


def evaluate(
    status: BandStatus,
    outcome: SessionPerformance,
    settings: Optional[EngineSettings] = None,
) -> tuple[BandStatus, Optional[BandTransition]]:
    """Add a session to the rolling window and promote or demote by one band.

    Demotion reacts to a single window at or below the demotion threshold;
    promotion also needs band_min_samples sessions. After a change the
    window starts over at the new band, and no second change happens on the
    same day when one_band_change_per_day is set.

    Returns:
        Tuple of the new status and the transition, or None if the band held.
    """
    settings = settings or get_settings()
    _validate_outcome(outcome)

    window = (status.recent_performance + [outcome])[-settings.band_window_size:]
    accuracy = windowed_accuracy(window)
    current = status.current_band

    locked = (
        settings.one_band_change_per_day
        and status.last_changed_at is not None
        and status.last_changed_at.date() == outcome.timestamp.date()
    )

    target = current
    reason = ""
    if not locked:
        if accuracy <= settings.demotion_accuracy and current != Band.A:
            target = shift_band(current, -1)
            reason = f"accuracy {accuracy:.0%} at or below {settings.demotion_accuracy:.0%}"
        elif (
            len(window) >= settings.band_min_samples
            and accuracy >= settings.promotion_accuracy
            and current != Band.E
        ):
            target = shift_band(current, 1)
            reason = (
                f"accuracy {accuracy:.0%} over {len(window)} sessions "
                f"at or above {settings.promotion_accuracy:.0%}"
            )

    if target == current:
        return replace(status, recent_performance=window), None

    transition = BandTransition(
        from_band=current, to_band=target, reason=reason, timestamp=outcome.timestamp
    )
    logger.info(f"Band {current.value} -> {target.value}: {reason}")
    updated = replace(
        status,
        current_band=target,
        recent_performance=[],
        history=status.history + [transition],
        last_changed_at=outcome.timestamp,
    )
    return updated, transition
