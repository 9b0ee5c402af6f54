"""Daily mix generation: new content, interleaving and SRS reviews under a time budget."""
from dataclasses import replace
from datetime import date, datetime
from typing import Iterable, Optional, Union

from loguru import logger

from med_tutor.catalog import ContentCatalog
from med_tutor.config import EngineSettings, get_settings
from med_tutor.errors import NotFoundError
from med_tutor.models import (
    Band,
    ContentItem,
    DailyMix,
    DomainState,
    LearnerProfile,
    MixBucket,
    MixItem,
    ReviewCard,
)
from med_tutor.recovery import effective_band
from med_tutor.review import get_weak_domains, last_touched
from med_tutor.scheduler import due_cards, overdue_days


MINUTE_PRECISION = 6


def _minutes(value: float) -> float:
    """Round minute sums so float drift never pushes a total past its limit."""
    return round(value, MINUTE_PRECISION)


def _candidates(catalog: ContentCatalog, domain: str, band: Band) -> list[ContentItem]:
    try:
        return catalog.get_items_by_domain_and_band(domain, band)
    except NotFoundError as e:
        logger.warning(f"Catalog miss for {domain}/{band.value}: {e}")
        return []


def _mix_item(item: ContentItem) -> MixItem:
    return MixItem(
        content_id=item.content_id,
        content_type=item.content_type,
        domain=item.domain,
        estimated_minutes=item.estimated_minutes,
        band=item.band,
    )


def _fill(items: Iterable[ContentItem], limit: float) -> tuple[list[MixItem], float]:
    """Greedily take items in order while they fit within limit minutes."""
    chosen = []
    used = 0.0
    for item in items:
        if _minutes(used + item.estimated_minutes) <= limit:
            chosen.append(_mix_item(item))
            used = _minutes(used + item.estimated_minutes)
    return chosen, used


def _bucket(items: list[MixItem], used: float, reasoning: str) -> MixBucket:
    if not items:
        used = 0.0
    domains = []
    for item in items:
        if item.domain not in domains:
            domains.append(item.domain)
    return MixBucket(items=items, estimated_time_minutes=used, reasoning=reasoning, domains=domains)


def _select_new_content(
    profile: LearnerProfile,
    catalog: ContentCatalog,
    band: Band,
    focus: str,
    focus_reason: str,
    seen: set[str],
    limit: float,
) -> MixBucket:
    recovering = profile.recovery.active
    candidates = [i for i in _candidates(catalog, focus, band) if i.content_id not in seen]
    if recovering:
        candidates.sort(key=lambda i: i.difficulty)
    items, used = _fill(candidates, limit)
    if not items:
        return _bucket([], 0.0, f"No unseen band {band.value} content available in {focus}")

    reasoning = focus_reason or f"Progressing your goal domain {focus} at band {band.value}"
    if recovering:
        reasoning += "; recovery day, easiest items first"
    return _bucket(items, used, reasoning)


def _fallback_domains(profile: LearnerProfile, catalog: ContentCatalog) -> list[str]:
    """Unfinished domains other than the primary, its neighbors first."""
    ordered = []
    for domain in catalog.neighbors(profile.primary_domain) + catalog.domains():
        status = profile.domains.get(domain)
        if domain == profile.primary_domain or domain in ordered:
            continue
        if status is not None and status.status == DomainState.COMPLETED:
            continue
        ordered.append(domain)
    return ordered


def _select_interleaving(
    profile: LearnerProfile,
    catalog: ContentCatalog,
    band: Band,
    exclude_domains: set[str],
    seen: set[str],
    limit: float,
    settings: EngineSettings,
) -> MixBucket:
    touched = last_touched(profile.session_history)
    neighbors = catalog.neighbors(profile.primary_domain)
    domains = [d for d in catalog.domains() if d not in exclude_domains]
    # Never-touched domains first, then least recently touched; neighbors break ties.
    domains.sort(key=lambda d: (touched.get(d, date.min), d not in neighbors))

    items: list[MixItem] = []
    used = 0.0
    for domain in domains:
        fresh = [i for i in _candidates(catalog, domain, band) if i.content_id not in seen]
        picked, minutes = _fill(fresh[:settings.interleaving_max_per_domain], _minutes(limit - used))
        items.extend(picked)
        used = _minutes(used + minutes)
    if not items:
        return _bucket([], 0.0, "No other domains with unseen content to interleave")
    return _bucket(
        items, used, "Interleaving domains you have not practised recently to strengthen retention"
    )


def _select_reviews(
    cards: Iterable[ReviewCard],
    catalog: ContentCatalog,
    today: date,
    limit: float,
) -> MixBucket:
    due = due_cards(cards, today)
    items: list[MixItem] = []
    used = 0.0
    deferred = 0
    for card in due:
        content = catalog.get_item_by_id(card.content_id)
        if content is None:
            logger.warning(f"Card {card.card_id} skipped: content {card.content_id} not in catalog")
            continue
        if _minutes(used + content.estimated_minutes) > limit:
            deferred += 1
            continue
        items.append(MixItem(
            content_id=card.content_id,
            content_type=card.content_type,
            domain=card.domain,
            estimated_minutes=content.estimated_minutes,
            band=content.band,
            card_id=card.card_id,
            overdue_days=overdue_days(card, today),
            needs_focused_review=card.is_leech,
        ))
        used = _minutes(used + content.estimated_minutes)

    if not items:
        reason = "No reviews due today" if not due else "Due reviews do not fit in today's budget"
        return _bucket([], 0.0, reason)
    reasoning = f"{len(items)} due review(s), most overdue first"
    leeches = sum(1 for i in items if i.needs_focused_review)
    if leeches:
        reasoning += f"; {leeches} need focused review"
    if deferred:
        reasoning += f"; {deferred} deferred to stay within budget"
    return _bucket(items, used, reasoning)


def generate(
    profile: LearnerProfile,
    catalog: ContentCatalog,
    today: date,
    settings: Optional[EngineSettings] = None,
    now: Optional[datetime] = None,
) -> DailyMix:
    """Assemble today's mix for a learner.

    Steps, in order: effective band (one easier while recovering), weak
    domains, new content for the primary or a dominating weak domain,
    interleaving from other domains, then due SRS reviews in whatever budget
    remains. The summed estimate never exceeds daily_budget_minutes.
    """
    settings = settings or get_settings()
    budget = settings.daily_budget_minutes
    band = effective_band(profile.band.current_band, profile.recovery.active)
    weak = get_weak_domains(profile.session_history, today, settings)
    seen = {c.content_id for c in profile.cards.values()}

    focus = profile.primary_domain
    focus_reason = ""
    if weak and weak[0].accuracy <= settings.weak_domain_dominance_accuracy:
        focus = weak[0].domain
        focus_reason = (
            f"Weak-domain focus: {focus} at {weak[0].accuracy:.0%} accuracy, "
            f"band {band.value}"
        )

    new_limit = min(settings.new_content_minutes, budget)
    new_content = _select_new_content(profile, catalog, band, focus, focus_reason, seen, new_limit)
    if not new_content.items and not focus_reason:
        for domain in _fallback_domains(profile, catalog):
            reason = (
                f"Default progression: nothing new at band {band.value} in "
                f"{profile.primary_domain}, continuing in {domain}"
            )
            bucket = _select_new_content(profile, catalog, band, domain, reason, seen, new_limit)
            if bucket.items:
                new_content, focus = bucket, domain
                break
    seen |= {i.content_id for i in new_content.items}
    remaining = _minutes(budget - new_content.estimated_time_minutes)

    interleaving = _select_interleaving(
        profile, catalog, band, {profile.primary_domain, focus}, seen,
        min(settings.interleaving_minutes, remaining), settings,
    )
    remaining = _minutes(remaining - interleaving.estimated_time_minutes)

    srs_reviews = _select_reviews(profile.cards.values(), catalog, today, remaining)

    mix = DailyMix(
        date=today,
        target_band=band,
        is_recovery_day=profile.recovery.active,
        weak_domains=weak,
        new_content=new_content,
        interleaving_content=interleaving,
        srs_reviews=srs_reviews,
        source_band=profile.band.current_band,
        generated_at=now or datetime.now(),
    )
    logger.debug(
        f"Mix for {profile.learner_id} on {today}: band {band.value}, "
        f"{len(new_content.items)} new, {len(interleaving.items)} interleaved, "
        f"{len(srs_reviews.items)} reviews, {mix.total_estimated_minutes:.1f} min"
    )
    return mix


def is_stale(
    mix: Optional[DailyMix],
    now: Union[date, datetime],
    profile: Optional[LearnerProfile] = None,
) -> bool:
    """Whether a mix must be regenerated before it is shown.

    Stale when missing, invalidated, from another day, or, given a profile,
    built for a band or recovery flag the profile no longer has.
    """
    if mix is None or mix.invalidated:
        return True
    day = now.date() if isinstance(now, datetime) else now
    if mix.date != day:
        return True
    if profile is not None:
        if mix.source_band != profile.band.current_band:
            return True
        if mix.is_recovery_day != profile.recovery.active:
            return True
    return False


def invalidate(mix: Optional[DailyMix], reason: str) -> Optional[DailyMix]:
    if mix is None or mix.invalidated:
        return mix
    logger.debug(f"Daily mix for {mix.date} invalidated: {reason}")
    return replace(mix, invalidated=True, invalidated_reason=reason)


def todays_mix(
    profile: LearnerProfile,
    catalog: ContentCatalog,
    now: datetime,
    settings: Optional[EngineSettings] = None,
) -> tuple[LearnerProfile, DailyMix]:
    """Return the cached mix when still fresh, else generate and cache a new one."""
    if not is_stale(profile.daily_mix, now, profile):
        return profile, profile.daily_mix
    mix = generate(profile, catalog, now.date(), settings, now)
    return replace(profile, daily_mix=mix), mix
