"""Engine settings loaded from environment variables or a .env file."""
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DB_PATH = str(Path.home() / ".med_tutor" / "tutor.db")


class EngineSettings(BaseSettings):
    """Every threshold the engine uses, overridable with MED_TUTOR_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="MED_TUTOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Storage
    # ========================================
    db_path: str = Field(default=DEFAULT_DB_PATH, description="SQLite profile store path")
    learner_id: str = Field(default="local", description="Learner used by the terminal app")
    save_retries: int = Field(default=3, ge=1, description="Attempts before a save fails")
    save_backoff_seconds: float = Field(
        default=0.5, ge=0.0, description="Base delay, doubled after each failed save"
    )

    # ========================================
    # Card scheduler
    # ========================================
    min_interval_days: int = Field(default=1, ge=1)
    max_interval_days: int = Field(default=180, ge=1, description="Interval ceiling")
    initial_stability: float = Field(default=1.0, gt=0.0)
    min_stability: float = Field(default=0.1, gt=0.0)
    stability_growth: float = Field(
        default=1.5, gt=0.0, description="Growth factor for an easy card on a good recall"
    )
    failure_stability_factor: float = Field(
        default=0.4, gt=0.0, lt=1.0, description="Share of stability kept after a lapse"
    )
    initial_difficulty: float = Field(default=5.0)
    min_difficulty: float = Field(default=1.0)
    max_difficulty: float = Field(default=10.0)
    difficulty_fail_step: float = Field(default=0.8, ge=0.0)
    difficulty_easy_step: float = Field(default=0.3, ge=0.0)
    leech_threshold: int = Field(default=4, ge=1, description="Failures that flag a leech")
    leech_clear_streak: int = Field(
        default=3, ge=1, description="Consecutive successes that clear a leech"
    )

    # ─── Behavior-to-grade ──────────────────────────────────────
    fast_time_ratio: float = Field(
        default=0.8, gt=0.0, description="Answers faster than this share of expected time keep full marks"
    )
    slow_time_ratio: float = Field(default=1.2, gt=0.0)

    # ========================================
    # Band controller
    # ========================================
    band_window_size: int = Field(default=5, ge=1, description="Sessions in the rolling window")
    band_min_samples: int = Field(default=3, ge=1, description="Sessions needed to promote")
    promotion_accuracy: float = Field(default=0.8, ge=0.0, le=1.0)
    demotion_accuracy: float = Field(default=0.5, ge=0.0, le=1.0)
    one_band_change_per_day: bool = Field(default=True)

    # ========================================
    # Domain gate
    # ========================================
    gate_min_cards: int = Field(default=10, ge=1, description="Reviewed cards needed for a gate")
    gate_min_mean_stability: float = Field(default=14.0, gt=0.0)
    gate_min_card_stability: float = Field(default=3.0, gt=0.0)
    osce_max_criterion_score: int = Field(default=2, ge=1)
    osce_passing_score: float = Field(default=0.8, gt=0.0, le=1.0)

    # ========================================
    # Recovery monitor
    # ========================================
    recovery_history_days: int = Field(default=3, ge=1)
    recovery_trigger_days: int = Field(default=2, ge=1)
    difficult_day_accuracy: float = Field(default=0.6, ge=0.0, le=1.0)
    difficult_day_hint_rate: float = Field(
        default=1.5, ge=0.0, description="Hints per item above which a day counts as difficult"
    )
    recovery_exit_accuracy: float = Field(default=0.75, ge=0.0, le=1.0)

    # ========================================
    # Daily mix
    # ========================================
    daily_budget_minutes: float = Field(default=30.0, gt=0.0)
    new_content_minutes: float = Field(default=10.0, ge=0.0)
    interleaving_minutes: float = Field(default=8.0, ge=0.0)
    interleaving_max_per_domain: int = Field(default=2, ge=1)
    weak_domain_threshold: float = Field(default=0.65, ge=0.0, le=1.0)
    weak_domain_limit: int = Field(default=3, ge=0)
    weak_domain_lookback_days: int = Field(default=14, ge=1)
    weak_domain_min_items: int = Field(default=3, ge=1)
    weak_domain_dominance_accuracy: float = Field(
        default=0.5, ge=0.0, le=1.0, description="A weak domain at or below this takes over new content"
    )

    @model_validator(mode="after")
    def check_consistency(self) -> "EngineSettings":
        if self.demotion_accuracy >= self.promotion_accuracy:
            raise ValueError("demotion_accuracy must be below promotion_accuracy")
        if self.recovery_trigger_days > self.recovery_history_days:
            raise ValueError("recovery_trigger_days cannot exceed recovery_history_days")
        if self.new_content_minutes + self.interleaving_minutes > self.daily_budget_minutes:
            raise ValueError("new and interleaving slices exceed the daily budget")
        if self.min_difficulty >= self.max_difficulty:
            raise ValueError("min_difficulty must be below max_difficulty")
        if self.min_interval_days > self.max_interval_days:
            raise ValueError("min_interval_days cannot exceed max_interval_days")
        if self.fast_time_ratio > self.slow_time_ratio:
            raise ValueError("fast_time_ratio cannot exceed slow_time_ratio")
        return self


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Get cached settings instance."""
    return EngineSettings()
