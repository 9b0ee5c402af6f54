from datetime import date, datetime

from med_tutor.models import (
    Band,
    DailyMix,
    DayOutcome,
    Flashcard,
    MicroCase,
    MixBucket,
    Quiz,
    SessionPerformance,
    SessionRecord,
)


def test_band_rank():
    assert [b.rank for b in Band] == [0, 1, 2, 3, 4]
    assert Band("C") == Band.C


def test_content_variants_carry_their_type():
    assert Quiz("q", "knee", Band.C).content_type.value == "quiz"
    assert MicroCase("m", "knee", Band.C).content_type.value == "micro-case"
    assert Flashcard("f", "knee", Band.C).content_type.value == "flashcard"
    assert Flashcard("f", "knee", Band.C).estimated_minutes == 1.0


def test_accuracy_properties_handle_empty():
    assert SessionPerformance(0, 0, datetime(2026, 1, 1)).accuracy == 0.0
    assert SessionRecord("knee", date(2026, 1, 1), 3, 4).accuracy == 0.75
    day = DayOutcome(date(2026, 1, 1), 6, 10, hints_used=5)
    assert day.accuracy == 0.6
    assert day.hints_per_item == 0.5


def test_daily_mix_total_minutes():
    mix = DailyMix(
        date=date(2026, 1, 1), target_band=Band.C, is_recovery_day=False,
        new_content=MixBucket(estimated_time_minutes=9),
        interleaving_content=MixBucket(estimated_time_minutes=8),
        srs_reviews=MixBucket(estimated_time_minutes=4),
    )
    assert mix.total_estimated_minutes == 21
