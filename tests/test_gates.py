from dataclasses import replace
from datetime import datetime
from itertools import product

import pytest

from med_tutor.errors import StateConflictError, ValidationError
from med_tutor.gates import (
    check_gate,
    evaluate_stability,
    record_session,
    refresh_stability,
    reopen_domain,
    score_mini_osce,
    submit_mini_osce,
    suggest_next_domain,
)
from med_tutor.models import (
    ContentType,
    CriterionScore,
    DomainState,
    DomainStatus,
    GateProgress,
    ReviewCard,
)

NOW = datetime(2026, 3, 2, 9, 0)


def stable_cards(count, stability):
    return [
        ReviewCard(
            card_id=f"l:c{i}", learner_id="l", content_id=f"c{i}",
            content_type=ContentType.QUIZ, domain="knee", stability=stability,
            difficulty=5.0, due_date=NOW.date(), created_at=NOW, review_count=3,
        )
        for i in range(count)
    ]


def osce(scores, passing=0.8):
    return score_mini_osce(
        [CriterionScore(f"c{i}", s) for i, s in enumerate(scores)], passing
    )


def test_first_session_starts_domain():
    status = record_session(DomainStatus("knee"), NOW)
    assert status.status == DomainState.IN_PROGRESS
    assert status.started_at == NOW
    assert record_session(status, NOW) is status


def test_stability_needs_enough_reviewed_cards(settings):
    met, mean = evaluate_stability(stable_cards(settings.gate_min_cards - 1, 50.0), settings)
    assert not met
    assert mean == 50.0
    assert evaluate_stability([], settings) == (False, None)


def test_stability_floor_blocks_gate(settings):
    cards = stable_cards(settings.gate_min_cards, 40.0)
    cards[0] = replace(cards[0], stability=1.0)
    met, _ = evaluate_stability(cards, settings)
    assert not met


def test_in_progress_moves_to_gate_pending_when_stable(settings):
    status = DomainStatus("knee", status=DomainState.IN_PROGRESS)
    status = check_gate(status, stable_cards(settings.gate_min_cards, 30.0), NOW, settings)
    assert status.status == DomainState.GATE_PENDING
    assert status.gate_progress.srs_stability_met
    assert status.gate_pending_at == NOW


def test_unstable_domain_stays_in_progress(settings):
    status = DomainStatus("knee", status=DomainState.IN_PROGRESS)
    status = check_gate(status, stable_cards(settings.gate_min_cards, 5.0), NOW, settings)
    assert status.status == DomainState.IN_PROGRESS
    assert not status.gate_progress.srs_stability_met


def test_score_mini_osce():
    result = osce([2, 2, 1, 2, 1])
    assert result.total_score == 8
    assert result.max_score == 10
    assert result.percentage == pytest.approx(0.8)
    assert result.passed


def test_score_mini_osce_rejects_bad_scores():
    with pytest.raises(ValidationError):
        osce([2, 3])
    with pytest.raises(ValidationError):
        osce([-1, 2])
    with pytest.raises(ValidationError):
        osce([])
    with pytest.raises(ValidationError):
        score_mini_osce([CriterionScore("a", 1), CriterionScore("a", 2)], 0.8)
    with pytest.raises(ValidationError):
        score_mini_osce([{"criterion_id": "a"}], 0.8)


def test_score_mini_osce_checks_rubric_coverage():
    scores = [{"criterion_id": "airway", "score": 2}, {"criterion_id": "breathing", "score": 2}]
    assert score_mini_osce(scores, 0.8, rubric=["airway", "breathing"]).passed
    with pytest.raises(ValidationError):
        score_mini_osce(scores, 0.8, rubric=["airway", "breathing", "circulation"])
    with pytest.raises(ValidationError):
        score_mini_osce(scores, 0.8, rubric=["airway"])


def test_failed_osce_stays_gate_pending():
    """Stability met, 70% against 80%: still gate-pending, attempt counted."""
    status = DomainStatus(
        "knee", status=DomainState.GATE_PENDING,
        gate_progress=GateProgress(srs_stability_met=True),
    )
    result = osce([2, 2, 2, 1, 0])
    assert result.percentage == pytest.approx(0.7)
    status = submit_mini_osce(status, result, NOW)
    assert status.status == DomainState.GATE_PENDING
    assert not status.gate_progress.mini_osce_passed
    assert status.gate_progress.attempts == 1


def test_passed_osce_completes_domain():
    status = DomainStatus(
        "knee", status=DomainState.GATE_PENDING,
        gate_progress=GateProgress(srs_stability_met=True),
    )
    status = submit_mini_osce(status, osce([2, 2, 2, 2, 1]), NOW)
    assert status.status == DomainState.COMPLETED
    assert status.completed_at == NOW


def test_osce_outside_gate_pending_is_a_conflict():
    with pytest.raises(StateConflictError):
        submit_mini_osce(DomainStatus("knee", status=DomainState.IN_PROGRESS), osce([2]), NOW)
    with pytest.raises(StateConflictError):
        submit_mini_osce(DomainStatus("knee", status=DomainState.COMPLETED), osce([2]), NOW)


def test_completed_only_when_both_criteria_hold(settings):
    """Enumerate partial criteria: completed appears only with stability and a pass."""
    for stable, osce_passed in product([True, False], repeat=2):
        status = DomainStatus("knee", status=DomainState.GATE_PENDING)
        cards = stable_cards(settings.gate_min_cards, 30.0 if stable else 1.0)
        status = check_gate(status, cards, NOW, settings)
        assert status.status == DomainState.GATE_PENDING
        status = submit_mini_osce(status, osce([2, 2] if osce_passed else [0, 1]), NOW)
        completed = status.status == DomainState.COMPLETED
        assert completed == (stable and osce_passed)
        status = check_gate(status, cards, NOW, settings)
        assert (status.status == DomainState.COMPLETED) == (stable and osce_passed)
        if completed:
            gp = status.gate_progress
            assert gp.srs_stability_met and gp.mini_osce_passed


def test_pass_before_stability_completes_on_later_check(settings):
    status = DomainStatus("knee", status=DomainState.GATE_PENDING)
    status = submit_mini_osce(status, osce([2, 2]), NOW)
    assert status.status == DomainState.GATE_PENDING
    status = check_gate(status, stable_cards(settings.gate_min_cards, 30.0), NOW, settings)
    assert status.status == DomainState.COMPLETED


def test_reopen_completed_domain():
    status = DomainStatus(
        "knee", status=DomainState.COMPLETED, completed_at=NOW,
        gate_progress=GateProgress(srs_stability_met=True, mini_osce_passed=True),
    )
    reopened = reopen_domain(status, "content revised", NOW)
    assert reopened.status == DomainState.IN_PROGRESS
    assert reopened.gate_progress == GateProgress()
    assert reopened.reopened_count == 1
    with pytest.raises(StateConflictError):
        reopen_domain(reopened, "again", NOW)


def test_suggest_next_domain_prefers_neighbors():
    statuses = {
        "knee": DomainStatus("knee", status=DomainState.COMPLETED),
        "hip": DomainStatus("hip", status=DomainState.COMPLETED),
        "trauma": DomainStatus("trauma"),
        "spine": DomainStatus("spine"),
    }
    assert suggest_next_domain(statuses, "knee", ["hip", "spine"], ["trauma", "spine"]) == "spine"
    assert suggest_next_domain(statuses, "knee", ["hip"], ["knee", "hip", "trauma"]) == "trauma"
    assert suggest_next_domain(statuses, "knee", [], ["knee", "hip"]) is None


def test_refresh_stability_clears_a_stale_flag_without_moving_state(settings):
    status = DomainStatus(
        "knee", status=DomainState.GATE_PENDING,
        gate_progress=GateProgress(srs_stability_met=True, mini_osce_passed=True),
    )
    refreshed = refresh_stability(status, stable_cards(settings.gate_min_cards, 5.0), settings)
    assert refreshed.status == DomainState.GATE_PENDING
    assert not refreshed.gate_progress.srs_stability_met
    assert refreshed.gate_progress.mean_stability == 5.0
    assert refreshed.gate_progress.mini_osce_passed
    done = DomainStatus("knee", status=DomainState.COMPLETED)
    assert refresh_stability(done, [], settings) is done
