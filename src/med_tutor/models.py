"""Data classes for the progression engine domain model."""
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import ClassVar, Optional

BAND_ORDER = "ABCDE"


class ContentType(str, Enum):
    QUIZ = "quiz"
    MICRO_CASE = "micro-case"
    FLASHCARD = "flashcard"


class Band(str, Enum):
    """Difficulty tier, A easiest to E hardest."""

    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"

    @property
    def rank(self) -> int:
        return BAND_ORDER.index(self.value)


class DomainState(str, Enum):
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    GATE_PENDING = "gate-pending"
    COMPLETED = "completed"


# Content catalog items


@dataclass
class ContentItem:
    content_type: ClassVar[ContentType]

    content_id: str
    domain: str
    band: Band
    estimated_minutes: float = 2.0
    difficulty: float = 0.5  # 0 easy .. 1 hard, within the band
    title: str = ""


@dataclass
class Quiz(ContentItem):
    content_type: ClassVar[ContentType] = ContentType.QUIZ

    expected_seconds: float = 60.0


@dataclass
class MicroCase(ContentItem):
    content_type: ClassVar[ContentType] = ContentType.MICRO_CASE

    estimated_minutes: float = 5.0
    decision_points: int = 3


@dataclass
class Flashcard(ContentItem):
    content_type: ClassVar[ContentType] = ContentType.FLASHCARD

    estimated_minutes: float = 1.0
    expected_seconds: float = 20.0


# Spaced repetition


@dataclass
class ReviewCard:
    card_id: str
    learner_id: str
    content_id: str
    content_type: ContentType
    domain: str
    stability: float
    difficulty: float
    due_date: date
    created_at: datetime
    interval_days: int = 1
    last_reviewed_at: Optional[datetime] = None
    review_count: int = 0
    fail_count: int = 0
    success_streak: int = 0
    is_leech: bool = False
    retired: bool = False


@dataclass
class ReviewResult:
    card_id: str
    grade: int
    passed: bool
    previous_interval: int
    interval_days: int
    due_date: date
    reviewed_at: datetime
    time_spent_seconds: float = 0.0
    hints_used: int = 0
    became_leech: bool = False
    leech_cleared: bool = False


# Bands


@dataclass
class SessionPerformance:
    correct: int
    total: int
    timestamp: datetime

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0


@dataclass
class BandTransition:
    from_band: Band
    to_band: Band
    reason: str
    timestamp: datetime


@dataclass
class BandStatus:
    current_band: Band
    recent_performance: list[SessionPerformance] = field(default_factory=list)
    history: list[BandTransition] = field(default_factory=list)
    last_changed_at: Optional[datetime] = None


# Domain gates


@dataclass
class GateProgress:
    mini_osce_passed: bool = False
    mini_osce_score: Optional[float] = None
    srs_stability_met: bool = False
    mean_stability: Optional[float] = None
    attempts: int = 0


@dataclass
class DomainStatus:
    domain: str
    status: DomainState = DomainState.NOT_STARTED
    gate_progress: GateProgress = field(default_factory=GateProgress)
    started_at: Optional[datetime] = None
    gate_pending_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    reopened_count: int = 0


@dataclass
class CriterionScore:
    criterion_id: str
    score: int


@dataclass
class OsceResult:
    criterion_scores: list[CriterionScore]
    total_score: int
    max_score: int
    percentage: float
    passing_score: float
    passed: bool
    submitted_at: Optional[datetime] = None


# Recovery


@dataclass
class DayOutcome:
    day: date
    correct: int
    total: int
    hints_used: int = 0
    difficult: bool = False

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0

    @property
    def hints_per_item(self) -> float:
        return self.hints_used / self.total if self.total else 0.0


@dataclass
class RecoveryState:
    active: bool = False
    manual: bool = False
    history: list[DayOutcome] = field(default_factory=list)
    activated_on: Optional[date] = None


# Daily mix


@dataclass
class WeakDomain:
    domain: str
    accuracy: float


@dataclass
class MixItem:
    content_id: str
    content_type: ContentType
    domain: str
    estimated_minutes: float
    band: Band
    card_id: Optional[str] = None
    overdue_days: int = 0
    needs_focused_review: bool = False


@dataclass
class MixBucket:
    items: list[MixItem] = field(default_factory=list)
    estimated_time_minutes: float = 0.0
    reasoning: str = ""
    domains: list[str] = field(default_factory=list)


@dataclass
class DailyMix:
    date: date
    target_band: Band
    is_recovery_day: bool
    weak_domains: list[WeakDomain] = field(default_factory=list)
    new_content: MixBucket = field(default_factory=MixBucket)
    interleaving_content: MixBucket = field(default_factory=MixBucket)
    srs_reviews: MixBucket = field(default_factory=MixBucket)
    source_band: Optional[Band] = None
    generated_at: Optional[datetime] = None
    invalidated: bool = False
    invalidated_reason: str = ""

    @property
    def total_estimated_minutes(self) -> float:
        total = (
            self.new_content.estimated_time_minutes
            + self.interleaving_content.estimated_time_minutes
            + self.srs_reviews.estimated_time_minutes
        )
        return round(total, 6)


# Sessions


@dataclass
class GradedItem:
    grade: int
    time_spent_seconds: float = 0.0
    hints_used: int = 0
    card_id: Optional[str] = None
    content_id: Optional[str] = None


@dataclass
class SessionOutcome:
    domain: str
    items_graded: list[GradedItem]
    accuracy: Optional[float] = None
    xp_earned: int = 0
    completed_at: Optional[datetime] = None


@dataclass
class SessionRecord:
    domain: str
    day: date
    correct: int
    total: int
    hints_used: int = 0
    xp_earned: int = 0

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0


@dataclass
class LearnerProfile:
    learner_id: str
    primary_domain: str
    level: str
    band: BandStatus
    domains: dict[str, DomainStatus] = field(default_factory=dict)
    cards: dict[str, ReviewCard] = field(default_factory=dict)
    recovery: RecoveryState = field(default_factory=RecoveryState)
    session_history: list[SessionRecord] = field(default_factory=list)
    osce_results: dict[str, list[OsceResult]] = field(default_factory=dict)
    daily_mix: Optional[DailyMix] = None
    xp: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
