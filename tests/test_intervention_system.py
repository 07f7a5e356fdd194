"""Test cases for the learning intervention system."""

from datetime import datetime, timedelta, timezone

import pytest

from engines.intervention_system import Intervention, InterventionSystem
from engines.risk import RiskSignal
from errors import NotFound, ValidationError

NOW = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)


def create_test_payload(**overrides):
    """Create a minimal valid intervention payload."""
    payload = {
        "user_id": "u1",
        "course_id": "c1",
        "risk_level": "high",
        "risk_score": 82,
        "reason": "inactive for 30+ days",
    }
    payload.update(overrides)
    return payload


def create_test_signal(user_id="u1", course_id="c1", score=82) -> RiskSignal:
    return RiskSignal(
        key=f"{user_id}:{course_id}",
        user_id=user_id,
        user_name=user_id,
        user_email=None,
        course_id=course_id,
        course_title=course_id,
        risk_score=score,
        risk_level="high",
        reason="inactive for 30+ days",
        completion_percent=25,
        overdue_assignments=0,
        low_score_assignments=0,
    )


@pytest.fixture
def system(repository):
    return InterventionSystem(repository)


def test_create_defaults_to_open(system):
    created = system.save(create_test_payload(), actor_id="staff-1", now=NOW)
    assert created.id > 0
    assert created.status == "open"
    assert created.is_active
    assert created.resolved_at is None
    assert created.metadata == {"updated_by": "staff-1"}
    assert created.created_at == NOW
    assert created.updated_at == NOW


def test_score_is_rounded_and_clamped(system):
    high = system.save(create_test_payload(risk_score=140.2), actor_id="staff-1", now=NOW)
    low = system.save(create_test_payload(risk_score=-3), actor_id="staff-1", now=NOW)
    mid = system.save(create_test_payload(risk_score=64.5), actor_id="staff-1", now=NOW)
    assert (high.risk_score, low.risk_score, mid.risk_score) == (100, 0, 65)


def test_validation_collects_all_errors(system):
    with pytest.raises(ValidationError) as excinfo:
        system.save(
            {
                "user_id": " ",
                "risk_level": "low",
                "risk_score": "high",
                "reason": "",
                "status": "closed",
                "due_at": "next tuesday",
            },
            actor_id="staff-1",
        )
    errors = excinfo.value.details["errors"]
    assert "user_id is required" in errors
    assert "risk_level must be one of medium, high" in errors
    assert "risk_score must be a number" in errors
    assert "reason is required" in errors
    assert "status must be one of open, in_progress, resolved, dismissed" in errors
    assert "due_at must be an ISO-8601 timestamp" in errors
    assert system.list_interventions() == []


def test_update_resolves_and_keeps_first_resolution_time(system):
    created = system.save(create_test_payload(), actor_id="staff-1", now=NOW)

    progressed = system.save(
        create_test_payload(
            id=created.id,
            status="in_progress",
            assigned_to="coach-7",
            action_plan="Call the learner",
            due_at="2024-03-10T09:00:00Z",
        ),
        actor_id="staff-2",
        now=NOW + timedelta(hours=1),
    )
    assert progressed.status == "in_progress"
    assert progressed.assigned_to == "coach-7"
    assert progressed.due_at == datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)
    assert progressed.metadata["updated_by"] == "staff-2"
    assert progressed.created_at == NOW

    resolved_at = NOW + timedelta(days=1)
    resolved = system.save(create_test_payload(id=created.id, status="resolved"), actor_id="staff-2", now=resolved_at)
    assert resolved.resolved_at == resolved_at
    assert not resolved.is_active

    again = system.save(
        create_test_payload(id=created.id, status="resolved", action_plan="Closed after call"),
        actor_id="staff-3",
        now=resolved_at + timedelta(days=2),
    )
    assert again.resolved_at == resolved_at

    reopened = system.save(create_test_payload(id=created.id, status="open"), actor_id="staff-3", now=NOW + timedelta(days=5))
    assert reopened.resolved_at is None


def test_update_unknown_or_bad_id(system):
    with pytest.raises(NotFound):
        system.save(create_test_payload(id=999), actor_id="staff-1")
    with pytest.raises(ValidationError):
        system.save(create_test_payload(id="7"), actor_id="staff-1")


def test_candidates_link_latest_active_case():
    older = Intervention(id=1, user_id="u1", course_id="c1", risk_level="high", risk_score=80, reason="r", created_at=NOW)
    newer = Intervention(
        id=2, user_id="u1", course_id="c1", risk_level="high", risk_score=90, reason="r", created_at=NOW + timedelta(days=1)
    )
    closed = Intervention(
        id=3,
        user_id="u1",
        course_id="c1",
        risk_level="high",
        risk_score=90,
        reason="r",
        status="resolved",
        created_at=NOW + timedelta(days=2),
    )
    other_course = Intervention(id=4, user_id="u2", course_id="c9", risk_level="medium", risk_score=50, reason="r")

    candidates = InterventionSystem.candidates(
        [create_test_signal(), create_test_signal(user_id="u2")],
        [older, closed, other_course, newer],
    )
    assert candidates[0].intervention.id == 2
    assert candidates[1].intervention is None

    body = candidates[0].to_dict()
    assert body["key"] == "u1:c1"
    assert body["intervention"]["id"] == 2
    assert candidates[1].to_dict()["intervention"] is None


def test_list_returns_newest_first(system):
    first = system.save(create_test_payload(), actor_id="staff-1", now=NOW)
    second = system.save(create_test_payload(user_id="u2"), actor_id="staff-1", now=NOW + timedelta(minutes=5))
    assert [item.id for item in system.list_interventions()] == [second.id, first.id]
