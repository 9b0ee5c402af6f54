"""Domain gate state machine and Mini-OSCE scoring."""
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional, Union

from loguru import logger

from med_tutor.config import EngineSettings, get_settings
from med_tutor.errors import StateConflictError, ValidationError
from med_tutor.models import (
    CriterionScore,
    DomainState,
    DomainStatus,
    GateProgress,
    OsceResult,
    ReviewCard,
)


def record_session(status: DomainStatus, now: datetime) -> DomainStatus:
    """Start the domain on its first completed session."""
    if status.status != DomainState.NOT_STARTED:
        return status
    logger.info(f"Domain {status.domain} started")
    return replace(status, status=DomainState.IN_PROGRESS, started_at=now)


def evaluate_stability(
    cards: Iterable[ReviewCard],
    settings: Optional[EngineSettings] = None,
) -> tuple[bool, Optional[float]]:
    """Check the SRS half of the gate over a domain's reviewed cards.

    Returns:
        (met, mean_stability). Met needs gate_min_cards reviewed cards, a mean
        stability at or above gate_min_mean_stability and no card below
        gate_min_card_stability. Mean is None when nothing was reviewed.
    """
    settings = settings or get_settings()
    reviewed = [c for c in cards if not c.retired and c.review_count > 0]
    if not reviewed:
        return False, None
    stabilities = [c.stability for c in reviewed]
    mean = sum(stabilities) / len(stabilities)
    met = (
        len(reviewed) >= settings.gate_min_cards
        and mean >= settings.gate_min_mean_stability
        and min(stabilities) >= settings.gate_min_card_stability
    )
    return met, round(mean, 2)


def _complete(status: DomainStatus, progress: GateProgress, now: datetime) -> DomainStatus:
    if not (progress.srs_stability_met and progress.mini_osce_passed):
        raise StateConflictError(f"Domain {status.domain} has not met both gate criteria")
    logger.info(f"Domain {status.domain} completed")
    return replace(status, status=DomainState.COMPLETED, gate_progress=progress, completed_at=now)


def refresh_stability(
    status: DomainStatus,
    cards: Iterable[ReviewCard],
    settings: Optional[EngineSettings] = None,
) -> DomainStatus:
    """Recompute the stability flag from the cards without changing state."""
    if status.status == DomainState.COMPLETED:
        return status
    met, mean = evaluate_stability(cards, settings)
    if status.gate_progress.srs_stability_met and not met:
        logger.info(f"Domain {status.domain} no longer meets the stability criterion")
    progress = replace(status.gate_progress, srs_stability_met=met, mean_stability=mean)
    return replace(status, gate_progress=progress)


def check_gate(
    status: DomainStatus,
    cards: Iterable[ReviewCard],
    now: datetime,
    settings: Optional[EngineSettings] = None,
) -> DomainStatus:
    """Refresh the stability criterion and advance the domain if it now qualifies."""
    if status.status == DomainState.COMPLETED:
        return status
    status = refresh_stability(status, cards, settings)
    progress = status.gate_progress
    met = progress.srs_stability_met
    mean = progress.mean_stability

    if status.status == DomainState.IN_PROGRESS and met:
        logger.info(f"Domain {status.domain} gate pending (mean stability {mean})")
        return replace(
            status, status=DomainState.GATE_PENDING, gate_progress=progress, gate_pending_at=now
        )
    if status.status == DomainState.GATE_PENDING and met and progress.mini_osce_passed:
        return _complete(status, progress, now)
    return replace(status, gate_progress=progress)


def _coerce_score(entry: Union[CriterionScore, dict]) -> CriterionScore:
    if isinstance(entry, CriterionScore):
        return entry
    try:
        return CriterionScore(criterion_id=str(entry["criterion_id"]), score=entry["score"])
    except (KeyError, TypeError):
        raise ValidationError(f"Malformed criterion score: {entry!r}") from None


def score_mini_osce(
    scores: Iterable[Union[CriterionScore, dict]],
    passing_score: float,
    rubric: Optional[Iterable[str]] = None,
    settings: Optional[EngineSettings] = None,
) -> OsceResult:
    """Score a Mini-OSCE submission.

    Args:
        scores: One {criterion_id, score} per rubric criterion, each 0-2
        passing_score: Pass mark as a fraction of the maximum (e.g. 0.8)
        rubric: Criterion ids the submission must cover exactly, if known

    Returns:
        OsceResult with percentage = total / max and passed = percentage >= passing_score.
    """
    settings = settings or get_settings()
    entries = [_coerce_score(s) for s in scores]
    if not entries:
        raise ValidationError("Mini-OSCE submission has no criterion scores")
    if not 0 < passing_score <= 1:
        raise ValidationError(f"passing_score must be in (0, 1], got {passing_score}")

    seen = set()
    for entry in entries:
        score = entry.score
        if isinstance(score, bool) or not isinstance(score, int):
            raise ValidationError(f"Criterion {entry.criterion_id} score must be an integer")
        if not 0 <= score <= settings.osce_max_criterion_score:
            raise ValidationError(
                f"Criterion {entry.criterion_id} score {score} outside "
                f"0-{settings.osce_max_criterion_score}"
            )
        if entry.criterion_id in seen:
            raise ValidationError(f"Criterion {entry.criterion_id} scored twice")
        seen.add(entry.criterion_id)

    if rubric is not None:
        expected = set(rubric)
        missing = expected - seen
        unknown = seen - expected
        if missing:
            raise ValidationError(f"Missing rubric criteria: {sorted(missing)}")
        if unknown:
            raise ValidationError(f"Unknown rubric criteria: {sorted(unknown)}")

    total = sum(e.score for e in entries)
    maximum = len(entries) * settings.osce_max_criterion_score
    percentage = total / maximum
    return OsceResult(
        criterion_scores=entries,
        total_score=total,
        max_score=maximum,
        percentage=percentage,
        passing_score=passing_score,
        passed=percentage >= passing_score,
    )


def submit_mini_osce(status: DomainStatus, result: OsceResult, now: datetime) -> DomainStatus:
    """Record a Mini-OSCE attempt against a gate-pending domain.

    A failed attempt leaves the domain gate-pending for a retry. A pass
    completes the domain only while the stability criterion also holds, so
    callers refresh it with refresh_stability() first.
    """
    if status.status == DomainState.COMPLETED:
        raise StateConflictError(f"Domain {status.domain} is already completed")
    if status.status != DomainState.GATE_PENDING:
        raise StateConflictError(
            f"Domain {status.domain} is {status.status.value}, Mini-OSCE needs gate-pending"
        )
    progress = replace(
        status.gate_progress,
        mini_osce_passed=status.gate_progress.mini_osce_passed or result.passed,
        mini_osce_score=result.percentage,
        attempts=status.gate_progress.attempts + 1,
    )
    if not result.passed:
        logger.info(
            f"Mini-OSCE for {status.domain} scored {result.percentage:.0%}, "
            f"needed {result.passing_score:.0%}"
        )
    if progress.mini_osce_passed and progress.srs_stability_met:
        return _complete(status, progress, now)
    return replace(status, gate_progress=progress)


def reopen_domain(status: DomainStatus, reason: str, now: datetime) -> DomainStatus:
    """Admin override: send a completed domain back to in-progress with a fresh gate."""
    if status.status != DomainState.COMPLETED:
        raise StateConflictError(
            f"Only completed domains can be reopened, {status.domain} is {status.status.value}"
        )
    logger.info(f"Domain {status.domain} reopened at {now.isoformat()}: {reason}")
    return replace(
        status,
        status=DomainState.IN_PROGRESS,
        gate_progress=GateProgress(),
        gate_pending_at=None,
        completed_at=None,
        reopened_count=status.reopened_count + 1,
    )


def suggest_next_domain(
    statuses: dict[str, DomainStatus],
    current: str,
    neighbors: Iterable[str],
    all_domains: Iterable[str],
) -> Optional[str]:
    """Next domain to study after current: an unfinished neighbor, else any unfinished domain."""
    for domain in list(neighbors) + list(all_domains):
        if domain == current:
            continue
        status = statuses.get(domain)
        if status is None or status.status != DomainState.COMPLETED:
            return domain
    return None
