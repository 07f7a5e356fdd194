"""Test cases for assignment authoring, submission and grading."""

from datetime import datetime, timedelta, timezone

import pytest

from engines.assignments import AssignmentService
from engines.risk import RiskScoringEngine
from errors import NotEligible, NotFound, ValidationError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def service(course_catalog, repository):
    return AssignmentService(repository)


def _publish(service, assignment_id="a1", **fields):
    payload = {"id": assignment_id, "course_id": "c1", "title": "Reflection", "is_published": True}
    payload.update(fields)
    return service.save_assignment(payload, actor_id="staff-1")


def test_create_assignment_defaults(service, repository):
    created = service.save_assignment({"course_id": "c1", "title": "  Case study  "})
    assert len(created.id) == 32
    assert created.title == "Case study"
    assert created.passing_percent == 70
    assert created.is_published is False
    assert created.due_at is None
    assert [a.id for a in repository.list_assignments()] == [created.id]


def test_update_keeps_fields_not_sent(service, repository):
    _publish(service, due_at="2024-06-10T09:00:00Z", passing_percent=80)
    updated = service.save_assignment({"id": "a1", "title": "Reflection (v2)"})
    assert updated.course_id == "c1"
    assert updated.passing_percent == 80
    assert updated.is_published is True
    assert updated.due_at == datetime(2024, 6, 10, 9, 0, tzinfo=timezone.utc)

    cleared = service.save_assignment({"id": "a1", "due_at": None})
    assert cleared.due_at is None
    assert repository.get_assignment("a1").title == "Reflection (v2)"


@pytest.mark.parametrize("value", [-5, 120, float("inf")])
def test_passing_percent_outside_range_is_rejected(service, repository, value):
    with pytest.raises(NotEligible):
        _publish(service, passing_percent=value)
    assert repository.list_assignments() == []


def test_invalid_assignment_fields_are_collected(service):
    with pytest.raises(ValidationError) as excinfo:
        service.save_assignment({"title": " ", "due_at": "next week"})
    assert excinfo.value.details["errors"] == [
        "course_id is required",
        "title is required",
        "due_at must be an ISO-8601 timestamp",
    ]


def test_unknown_course_or_assignment(service):
    with pytest.raises(NotFound):
        service.save_assignment({"course_id": "missing", "title": "Essay"})
    with pytest.raises(NotFound):
        service.save_assignment({"id": "nope", "title": "Essay"})


def test_submit_draft_then_final(service):
    _publish(service)
    draft = service.submit("u1", "a1", status="draft", now=NOW)
    assert (draft.status, draft.submitted_at) == ("draft", None)

    final = service.submit("u1", "a1", now=NOW + timedelta(hours=1))
    assert final.status == "submitted"
    assert final.submitted_at == NOW + timedelta(hours=1)


def test_submit_rejections(service):
    _publish(service, "hidden", is_published=False)
    _publish(service)
    with pytest.raises(NotFound):
        service.submit("u1", "missing")
    with pytest.raises(NotEligible):
        service.submit("u1", "hidden")
    with pytest.raises(ValidationError):
        service.submit("u1", "a1", status="graded")


def test_grade_clamps_score_and_stamps_graded_at(service, repository):
    _publish(service)
    service.submit("u1", "a1", now=NOW)

    graded = service.grade("a1", "u1", 140, actor_id="staff-1", now=NOW + timedelta(days=1))
    assert graded.score_percent == 100
    assert graded.graded_at == NOW + timedelta(days=1)
    assert graded.submitted_at == NOW

    with pytest.raises(NotEligible):
        service.submit("u1", "a1")


def test_returned_work_can_be_resubmitted(service, repository):
    _publish(service)
    service.submit("u1", "a1", now=NOW)
    returned = service.grade("a1", "u1", -10, status="returned", now=NOW + timedelta(days=1))
    assert returned.score_percent == 0
    assert returned.graded_at is None

    again = service.submit("u1", "a1", now=NOW + timedelta(days=2))
    assert again.status == "submitted"
    assert again.score_percent == 0
    assert repository.get_submission("a1", "u1").submitted_at == NOW + timedelta(days=2)


def test_grade_rejections(service):
    _publish(service)
    with pytest.raises(NotFound):
        service.grade("a1", "u1", 50)
    service.submit("u1", "a1", status="draft", now=NOW)
    with pytest.raises(NotEligible):
        service.grade("a1", "u1", 50)
    service.submit("u1", "a1", now=NOW)
    with pytest.raises(ValidationError):
        service.grade("a1", "u1", 50, status="submitted")
    with pytest.raises(ValidationError):
        service.grade("a1", "u1", "fifty")


def test_low_grade_shows_up_in_risk_signals(service, repository):
    _publish(service, passing_percent=60)
    service.submit("u1", "a1", now=NOW)
    service.grade("a1", "u1", 40, now=NOW)

    signals = RiskScoringEngine().build_signals(
        repository.list_users(),
        repository.list_courses(),
        repository.list_modules(),
        repository.list_module_progress(),
        repository.list_assignments(),
        repository.list_submissions(),
        NOW + timedelta(days=1),
    )
    (signal,) = [s for s in signals if s.user_id == "u1"]
    assert signal.low_score_assignments == 1
    assert signal.overdue_assignments == 0
    # 0% completion (+35) and one low score (+10)
    assert signal.risk_score == 45
    assert signal.reason == "completion is below 35%, 1 low-score assignment"
