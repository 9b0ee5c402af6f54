"""Progression service: applies sessions, assessments and recovery requests to a profile."""
import copy
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, Optional, Union

from loguru import logger

from med_tutor import bands, gates, recovery
from med_tutor.catalog import ContentCatalog
from med_tutor.config import EngineSettings, get_settings
from med_tutor.daily_mix import invalidate, todays_mix
from med_tutor.db import ProfileStore
from med_tutor.errors import (
    EngineError,
    NotFoundError,
    OwnershipError,
    PersistenceError,
    ValidationError,
)
from med_tutor.models import (
    BandTransition,
    CriterionScore,
    DailyMix,
    DayOutcome,
    DomainState,
    DomainStatus,
    GradedItem,
    LearnerProfile,
    OsceResult,
    ReviewCard,
    ReviewResult,
    SessionOutcome,
    SessionPerformance,
    SessionRecord,
)
from med_tutor.scheduler import make_card_id, new_card, retire_card, review


@dataclass
class SessionReport:
    profile: LearnerProfile
    review_results: list[ReviewResult] = field(default_factory=list)
    band_transition: Optional[BandTransition] = None
    domain_events: list[str] = field(default_factory=list)
    recovery_changed: bool = False
    mix_invalidated: bool = False


def _check_owner(profile: LearnerProfile, learner_id: str) -> None:
    if profile.learner_id != learner_id:
        raise OwnershipError(f"Profile {profile.learner_id} cannot be changed by {learner_id}")


class ProgressionService:
    """Explicit per-request service over a catalog and, optionally, a profile store.

    Every operation takes a profile and returns a new one; the profile passed
    in is never modified, so a failure anywhere leaves it as it was.
    """

    def __init__(
        self,
        catalog: ContentCatalog,
        settings: Optional[EngineSettings] = None,
        store: Optional[ProfileStore] = None,
    ):
        self.catalog = catalog
        self.settings = settings or get_settings()
        self.store = store
        self.pending: dict[str, list[tuple[SessionOutcome, datetime]]] = {}
        self.rejected: dict[str, list[tuple[SessionOutcome, datetime, str]]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ─── Profile lifecycle ──────────────────────────────────────

    def create_profile(
        self,
        learner_id: str,
        primary_domain: str,
        level: str,
        now: Optional[datetime] = None,
    ) -> LearnerProfile:
        now = now or datetime.now()
        domains = self.catalog.domains()
        if primary_domain not in domains:
            raise NotFoundError(f"Unknown domain: {primary_domain}")
        logger.info(f"Creating profile {learner_id} ({level}) in {primary_domain}")
        return LearnerProfile(
            learner_id=learner_id,
            primary_domain=primary_domain,
            level=level,
            band=bands.initial_band_status(level),
            domains={d: DomainStatus(domain=d) for d in domains},
            created_at=now,
            updated_at=now,
        )

    # ─── Sessions ───────────────────────────────────────────────

    def _card_for(
        self, profile: LearnerProfile, graded: GradedItem, learner_id: str, now: datetime
    ) -> ReviewCard:
        if graded.card_id is not None:
            card = profile.cards.get(graded.card_id)
            if card is None:
                raise NotFoundError(f"Unknown card: {graded.card_id}")
            return card
        if graded.content_id is None:
            raise ValidationError("Graded item needs a card_id or a content_id")
        existing = profile.cards.get(make_card_id(learner_id, graded.content_id))
        if existing is not None:
            return existing
        item = self.catalog.get_item_by_id(graded.content_id)
        if item is None:
            raise NotFoundError(f"Content {graded.content_id} is not in the catalog")
        return new_card(learner_id, item, now, self.settings)

    @staticmethod
    def _domain_cards(profile: LearnerProfile, domain: str) -> list[ReviewCard]:
        return [c for c in profile.cards.values() if c.domain == domain]

    def _advance_primary(self, profile: LearnerProfile, events: list[str]) -> None:
        current = profile.primary_domain
        following = gates.suggest_next_domain(
            profile.domains, current, self.catalog.neighbors(current), self.catalog.domains()
        )
        if following is None:
            events.append("all domains completed")
            return
        logger.info(f"{profile.learner_id}: primary domain {current} -> {following}")
        events.append(f"primary domain {current} -> {following}")
        profile.primary_domain = following

    def complete_session(
        self,
        profile: LearnerProfile,
        outcome: SessionOutcome,
        learner_id: str,
        now: Optional[datetime] = None,
    ) -> SessionReport:
        """Apply a finished session: cards, band, domain gate, recovery and mix.

        Accuracy is taken from the graded items (grade 3 and above counts as
        correct). Raises before returning anything if any item is invalid.
        """
        now = now or outcome.completed_at or datetime.now()
        _check_owner(profile, learner_id)
        if not outcome.items_graded:
            raise ValidationError("Session outcome has no graded items")
        if outcome.xp_earned < 0:
            raise ValidationError(f"xp_earned cannot be negative: {outcome.xp_earned}")

        working = copy.deepcopy(profile)
        domain = outcome.domain
        if domain not in working.domains:
            if domain not in self.catalog.domains():
                raise NotFoundError(f"Unknown domain: {domain}")
            working.domains[domain] = DomainStatus(domain=domain)

        results = []
        hints = 0
        touched = [domain]
        for graded in outcome.items_graded:
            card = self._card_for(working, graded, learner_id, now)
            card, result = review(
                card, graded.grade, graded.time_spent_seconds, graded.hints_used,
                learner_id, now, self.settings,
            )
            working.cards[card.card_id] = card
            results.append(result)
            hints += graded.hints_used
            if card.domain not in touched:
                touched.append(card.domain)
        correct = sum(1 for r in results if r.passed)
        total = len(results)

        working.session_history.append(SessionRecord(
            domain=domain, day=now.date(), correct=correct, total=total,
            hints_used=hints, xp_earned=outcome.xp_earned,
        ))
        working.xp += outcome.xp_earned

        working.band, transition = bands.evaluate(
            working.band, SessionPerformance(correct=correct, total=total, timestamp=now),
            self.settings,
        )

        # Cards from other domains may be reviewed in this session; their gates move too.
        events = []
        primary_before = working.primary_domain
        for name in touched:
            before = working.domains.get(name) or DomainStatus(domain=name)
            status = gates.record_session(before, now)
            status = gates.check_gate(status, self._domain_cards(working, name), now, self.settings)
            if status.status != before.status:
                events.append(f"{name}: {before.status.value} -> {status.status.value}")
            working.domains[name] = status
        if primary_before in touched and working.domains[primary_before].status == DomainState.COMPLETED:
            self._advance_primary(working, events)

        was_active = working.recovery.active
        working.recovery = recovery.observe(
            working.recovery,
            DayOutcome(day=now.date(), correct=correct, total=total, hints_used=hints),
            self.settings,
        )
        recovery_changed = was_active != working.recovery.active

        reasons = []
        if transition is not None:
            reasons.append(f"band {transition.from_band.value} -> {transition.to_band.value}")
        if recovery_changed:
            reasons.append("recovery " + ("on" if working.recovery.active else "off"))
        if working.primary_domain != primary_before:
            reasons.append("primary domain changed")
        mix_invalidated = False
        if reasons and working.daily_mix is not None and not working.daily_mix.invalidated:
            working.daily_mix = invalidate(working.daily_mix, ", ".join(reasons))
            mix_invalidated = True

        working.updated_at = now
        return SessionReport(
            profile=working,
            review_results=results,
            band_transition=transition,
            domain_events=events,
            recovery_changed=recovery_changed,
            mix_invalidated=mix_invalidated,
        )

    # ─── Recovery, gates and the daily mix ──────────────────────

    def request_recovery(
        self, profile: LearnerProfile, learner_id: str, now: Optional[datetime] = None
    ) -> LearnerProfile:
        """Switch recovery on at the learner's request; the next mix is rebuilt easier."""
        now = now or datetime.now()
        _check_owner(profile, learner_id)
        state = recovery.request_recovery(profile.recovery, now.date())
        mix = profile.daily_mix
        if state.active != profile.recovery.active:
            mix = invalidate(mix, "recovery requested")
        return replace(profile, recovery=state, daily_mix=mix, updated_at=now)

    def submit_mini_osce(
        self,
        profile: LearnerProfile,
        learner_id: str,
        domain: str,
        scores: Iterable[Union[CriterionScore, dict]],
        passing_score: Optional[float] = None,
        rubric: Optional[Iterable[str]] = None,
        now: Optional[datetime] = None,
    ) -> tuple[LearnerProfile, OsceResult]:
        now = now or datetime.now()
        _check_owner(profile, learner_id)
        status = profile.domains.get(domain)
        if status is None:
            raise NotFoundError(f"Unknown domain: {domain}")
        if passing_score is None:
            passing_score = self.settings.osce_passing_score

        result = gates.score_mini_osce(scores, passing_score, rubric, self.settings)
        result = replace(result, submitted_at=now)
        status = gates.refresh_stability(status, self._domain_cards(profile, domain), self.settings)
        updated_status = gates.submit_mini_osce(status, result, now)

        working = copy.deepcopy(profile)
        working.domains[domain] = updated_status
        working.osce_results.setdefault(domain, []).append(result)
        if updated_status.status == DomainState.COMPLETED and domain == working.primary_domain:
            events: list[str] = []
            self._advance_primary(working, events)
            working.daily_mix = invalidate(working.daily_mix, "primary domain changed")
        working.updated_at = now
        return working, result

    def reopen_domain(
        self,
        profile: LearnerProfile,
        learner_id: str,
        domain: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> LearnerProfile:
        """Admin override sending a completed domain back to in-progress."""
        now = now or datetime.now()
        _check_owner(profile, learner_id)
        status = profile.domains.get(domain)
        if status is None:
            raise NotFoundError(f"Unknown domain: {domain}")
        domains = dict(profile.domains)
        domains[domain] = gates.reopen_domain(status, reason, now)
        return replace(profile, domains=domains, updated_at=now)

    def retire_withdrawn_cards(
        self, profile: LearnerProfile, learner_id: str, now: Optional[datetime] = None
    ) -> LearnerProfile:
        """Retire cards whose content is no longer in the catalog."""
        _check_owner(profile, learner_id)
        withdrawn = [
            c for c in profile.cards.values()
            if not c.retired and self.catalog.get_item_by_id(c.content_id) is None
        ]
        if not withdrawn:
            return profile
        cards = dict(profile.cards)
        for card in withdrawn:
            cards[card.card_id] = retire_card(card)
        logger.info(f"{learner_id}: retired {len(withdrawn)} card(s) for withdrawn content")
        return replace(profile, cards=cards, updated_at=now or datetime.now())

    def todays_mix(
        self, profile: LearnerProfile, learner_id: str, now: Optional[datetime] = None
    ) -> tuple[LearnerProfile, DailyMix]:
        now = now or datetime.now()
        profile = self.retire_withdrawn_cards(profile, learner_id, now)
        return todays_mix(profile, self.catalog, now, self.settings)

    # ─── Store-backed operations ────────────────────────────────

    def _require_store(self) -> ProfileStore:
        if self.store is None:
            raise PersistenceError("No profile store configured")
        return self.store

    def _lock_for(self, learner_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(learner_id, threading.Lock())

    def load_or_create(
        self, learner_id: str, primary_domain: str, level: str, now: Optional[datetime] = None
    ) -> LearnerProfile:
        store = self._require_store()
        with self._lock_for(learner_id):
            profile = store.load(learner_id)
            if profile is None:
                profile = self.create_profile(learner_id, primary_domain, level, now)
                store.save(profile)
            return profile

    def save(self, profile: LearnerProfile) -> None:
        store = self._require_store()
        with self._lock_for(profile.learner_id):
            store.save(profile)

    def _apply_and_save(
        self, learner_id: str, outcome: SessionOutcome, now: Optional[datetime]
    ) -> SessionReport:
        store = self._require_store()
        profile = store.load(learner_id)
        if profile is None:
            raise NotFoundError(f"No stored profile for learner {learner_id}")
        report = self.complete_session(profile, outcome, learner_id, now)
        store.save(report.profile, report.review_results)
        return report

    def _queue(self, learner_id: str, outcome: SessionOutcome, now: datetime) -> None:
        self.pending.setdefault(learner_id, []).append((outcome, now))
        logger.error(f"Could not save progress for {learner_id}; session queued for retry")

    def _flush_locked(self, learner_id: str) -> int:
        queued = self.pending.pop(learner_id, [])
        saved = 0
        for index, (outcome, now) in enumerate(queued):
            try:
                self._apply_and_save(learner_id, outcome, now)
            except PersistenceError:
                self.pending[learner_id] = queued[index:]
                raise
            except EngineError as e:
                logger.error(f"Queued session for {learner_id} from {now} rejected: {e}")
                self.rejected.setdefault(learner_id, []).append((outcome, now, str(e)))
                continue
            saved += 1
        if saved:
            logger.info(f"Saved {saved} queued session(s) for {learner_id}")
        return saved

    def record_session(
        self, learner_id: str, outcome: SessionOutcome, now: Optional[datetime] = None
    ) -> SessionReport:
        """Load, apply and save a session under the learner's lock.

        Earlier queued sessions are replayed first so sessions land in the
        order they were played. If the store fails, the outcome joins the
        queue for flush_pending() and PersistenceError is raised, so graded
        work is never lost.
        """
        now = now or outcome.completed_at or datetime.now()
        with self._lock_for(learner_id):
            try:
                if self.pending.get(learner_id):
                    self._flush_locked(learner_id)
                return self._apply_and_save(learner_id, outcome, now)
            except PersistenceError:
                self._queue(learner_id, outcome, now)
                raise

    def flush_pending(self, learner_id: str) -> int:
        """Retry queued sessions in order. Returns how many were saved.

        A queued session that no longer applies (an EngineError other than
        PersistenceError) moves to rejected with its error instead of
        blocking the ones behind it.
        """
        with self._lock_for(learner_id):
            return self._flush_locked(learner_id)
