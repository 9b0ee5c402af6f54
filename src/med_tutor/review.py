"""Weak domain identification from session history."""
from datetime import date, timedelta
from typing import Iterable, Optional

from med_tutor.config import EngineSettings, get_settings
from med_tutor.models import SessionRecord, WeakDomain


def domain_accuracy(
    history: Iterable[SessionRecord],
    today: date,
    lookback_days: int,
) -> dict[str, tuple[int, int]]:
    """Per-domain (correct, total) over sessions in the lookback window."""
    since = today - timedelta(days=lookback_days)
    totals: dict[str, tuple[int, int]] = {}
    for record in history:
        if record.day <= since or record.day > today:
            continue
        correct, total = totals.get(record.domain, (0, 0))
        totals[record.domain] = (correct + record.correct, total + record.total)
    return totals


def get_weak_domains(
    history: Iterable[SessionRecord],
    today: date,
    settings: Optional[EngineSettings] = None,
) -> list[WeakDomain]:
    """Get domains where accuracy is below threshold (sorted worst first)."""
    settings = settings or get_settings()
    totals = domain_accuracy(history, today, settings.weak_domain_lookback_days)
    weak = [
        WeakDomain(domain=domain, accuracy=round(correct / total, 4))
        for domain, (correct, total) in totals.items()
        if total >= settings.weak_domain_min_items
        and correct / total < settings.weak_domain_threshold
    ]
    weak.sort(key=lambda w: (w.accuracy, w.domain))
    return weak[:settings.weak_domain_limit]


def last_touched(history: Iterable[SessionRecord]) -> dict[str, date]:
    """Most recent day each domain was studied."""
    touched: dict[str, date] = {}
    for record in history:
        if record.domain not in touched or record.day > touched[record.domain]:
            touched[record.domain] = record.day
    return touched
