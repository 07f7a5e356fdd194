from datetime import datetime, timedelta, timezone

import pytest

import db
from engines.completion import (
    ProgressAggregator,
    compute_path_progress,
    course_completion_percent,
    is_course_complete,
)
from errors import NotEligible, NotFound, ValidationError

NOW = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def test_course_completion_requires_every_module():
    modules = {"c1": ["m1", "m2"], "empty": []}
    assert is_course_complete("c1", modules, {"m1", "m2"})
    assert not is_course_complete("c1", modules, {"m1"})
    assert not is_course_complete("empty", modules, set())
    assert not is_course_complete("missing", modules, {"m1", "m2"})


def test_path_progress_counts_unique_required_courses():
    progress = compute_path_progress("p1", ["c1", "c2", "c1", "c3"], {"c1": True, "c2": False})
    assert progress.total_courses == 3
    assert progress.completed_courses == 1
    assert progress.completion_percent == 33
    assert progress.status == "enrolled"


def test_path_progress_completed_and_empty():
    done = compute_path_progress("p1", ["c1", "c2"], {"c1": True, "c2": True})
    assert (done.completion_percent, done.status) == (100, "completed")

    empty = compute_path_progress("p1", [], {})
    assert (empty.total_courses, empty.completion_percent, empty.status) == (0, 0, "enrolled")


def test_nearly_finished_path_is_not_reported_complete():
    course_ids = [f"c{i}" for i in range(200)]
    flags = {course_id: True for course_id in course_ids[:-1]}
    progress = compute_path_progress("p1", course_ids, flags)
    assert progress.completed_courses == 199
    assert progress.completion_percent == 99
    assert progress.status == "enrolled"

    flags[course_ids[-1]] = True
    done = compute_path_progress("p1", course_ids, flags)
    assert (done.completion_percent, done.status) == (100, "completed")


def test_nearly_finished_course_percent_stays_below_100():
    module_ids = [f"m{i}" for i in range(200)]
    modules = {"c1": module_ids}
    assert course_completion_percent("c1", modules, set(module_ids[:-1])) == 99
    assert course_completion_percent("c1", modules, set(module_ids)) == 100


def test_module_completion_is_sticky(course_catalog, repository):
    aggregator = ProgressAggregator(repository)
    first = aggregator.record_module_activity("u1", "m1", completed=True, watch_time_seconds=30, now=NOW)
    assert first.completed
    assert first.completed_at == NOW

    later = NOW + timedelta(hours=2)
    second = aggregator.record_module_activity("u1", "m1", completed=False, watch_time_seconds=45, now=later)
    assert second.completed
    assert second.completed_at == NOW
    assert second.watch_time_seconds == 75
    assert second.last_watched_at == later

    rows = db.list_module_progress("u1")
    assert len(rows) == 1


def test_record_activity_rejects_bad_input(course_catalog, repository):
    aggregator = ProgressAggregator(repository)
    with pytest.raises(NotFound):
        aggregator.record_module_activity("u1", "unknown", completed=True)
    with pytest.raises(ValidationError):
        aggregator.record_module_activity("u1", "m1", watch_time_seconds=-5)


def test_course_completion_summary(course_catalog, repository):
    aggregator = ProgressAggregator(repository)
    aggregator.record_module_activity("u1", "m1", completed=True, now=NOW)
    summary = aggregator.course_completion("u1", "c1")
    assert summary["module_count"] == 3
    assert summary["completed_modules"] == 1
    assert summary["completion_percent"] == 33
    assert summary["completed"] is False

    empty = aggregator.course_completion("u1", "c-empty")
    assert (empty["module_count"], empty["completion_percent"], empty["completed"]) == (0, 0, False)

    with pytest.raises(NotFound):
        aggregator.course_completion("u1", "nope")


@pytest.fixture
def learning_path(course_catalog):
    db.upsert_course("c2", "Data Protection")
    db.upsert_module("m4", "c2", "GDPR in practice")
    db.upsert_learning_path("p1", "Onboarding", description="Start here")
    db.upsert_learning_path_course("p1", "c1", sort_order=1)
    db.upsert_learning_path_course("p1", "c2", sort_order=2)
    db.upsert_learning_path_course("p1", "c-empty", sort_order=3, required=False)
    db.upsert_learning_path("p-old", "Retired", is_active=False)
    return "p1"


def _complete_course_one(aggregator, user_id="u1"):
    for module_id in ("m1", "m2", "m3"):
        aggregator.record_module_activity(user_id, module_id, completed=True, now=NOW)


def test_enroll_computes_required_course_progress(learning_path, repository):
    aggregator = ProgressAggregator(repository)
    _complete_course_one(aggregator)

    progress = aggregator.enroll("u1", learning_path, now=NOW)
    assert progress.total_courses == 2
    assert progress.completed_courses == 1
    assert progress.completion_percent == 50
    assert progress.status == "enrolled"
    assert progress.enrolled_at == NOW
    assert progress.completed_at is None


def test_enroll_unknown_and_inactive_paths(learning_path, repository):
    aggregator = ProgressAggregator(repository)
    with pytest.raises(NotFound):
        aggregator.enroll("u1", "missing")
    with pytest.raises(NotEligible):
        aggregator.enroll("u1", "p-old")


def test_completing_last_module_refreshes_enrolled_path(learning_path, repository):
    aggregator = ProgressAggregator(repository)
    aggregator.enroll("u1", learning_path, now=NOW)
    _complete_course_one(aggregator)
    finished = NOW + timedelta(days=3)
    aggregator.record_module_activity("u1", "m4", completed=True, now=finished)

    stored = repository.get_path_progress(learning_path, "u1")
    assert stored.status == "completed"
    assert stored.completion_percent == 100
    assert stored.completed_at == finished
    assert stored.enrolled_at == NOW


def test_paused_status_survives_recompute_until_complete(learning_path, repository):
    aggregator = ProgressAggregator(repository)
    aggregator.enroll("u1", learning_path, now=NOW)
    assert db.set_learning_path_status(learning_path, "u1", "paused")

    _complete_course_one(aggregator)
    assert repository.get_path_progress(learning_path, "u1").status == "paused"

    again = aggregator.enroll("u1", learning_path, now=NOW + timedelta(days=1))
    assert again.status == "paused"
    assert again.completion_percent == 50

    aggregator.record_module_activity("u1", "m4", completed=True, now=NOW + timedelta(days=2))
    assert repository.get_path_progress(learning_path, "u1").status == "completed"


def test_staff_pause_and_resume(learning_path, repository):
    aggregator = ProgressAggregator(repository)
    aggregator.enroll("u1", learning_path, now=NOW)

    paused = aggregator.set_path_status("u1", learning_path, "paused", actor_id="staff-1", now=NOW)
    assert paused.status == "paused"
    _complete_course_one(aggregator)
    assert repository.get_path_progress(learning_path, "u1").status == "paused"

    resumed = aggregator.set_path_status("u1", learning_path, "enrolled", now=NOW + timedelta(days=1))
    assert resumed.status == "enrolled"
    assert resumed.completion_percent == 50


def test_resuming_a_finished_path_marks_it_completed(learning_path, repository):
    aggregator = ProgressAggregator(repository)
    aggregator.enroll("u1", learning_path, now=NOW)
    aggregator.set_path_status("u1", learning_path, "paused", now=NOW)
    for module_id in ("m1", "m2", "m3", "m4"):
        db.upsert_module_progress("u1", module_id, completed=True, now=NOW)

    resumed = aggregator.set_path_status("u1", learning_path, "enrolled", now=NOW + timedelta(days=1))
    assert resumed.status == "completed"
    assert resumed.completed_at == NOW + timedelta(days=1)

    with pytest.raises(NotEligible):
        aggregator.set_path_status("u1", learning_path, "paused")


def test_path_status_rejections(learning_path, repository):
    aggregator = ProgressAggregator(repository)
    with pytest.raises(NotFound):
        aggregator.set_path_status("u1", learning_path, "paused")
    aggregator.enroll("u1", learning_path, now=NOW)
    with pytest.raises(ValidationError):
        aggregator.set_path_status("u1", learning_path, "completed")


def test_list_learning_paths_reports_course_flags(learning_path, repository):
    aggregator = ProgressAggregator(repository)
    _complete_course_one(aggregator)

    before = aggregator.list_learning_paths("u1", now=NOW)
    assert [item["id"] for item in before] == ["p1"]
    item = before[0]
    assert item["is_enrolled"] is False
    assert item["status"] is None
    assert item["completion_percent"] == 50
    assert item["courses_count"] == 3
    flags = {course["course_id"]: course["completed"] for course in item["courses"]}
    assert flags == {"c1": True, "c2": False, "c-empty": False}

    aggregator.enroll("u1", learning_path, now=NOW)
    after = aggregator.list_learning_paths("u1", now=NOW)
    assert after[0]["is_enrolled"] is True
    assert after[0]["status"] == "enrolled"

    with_inactive = aggregator.list_learning_paths("u1", include_inactive=True, now=NOW)
    assert {entry["id"] for entry in with_inactive} == {"p1", "p-old"}


def test_listing_refreshes_stale_aggregate(learning_path, repository):
    aggregator = ProgressAggregator(repository)
    aggregator.enroll("u1", learning_path, now=NOW)
    # Completion recorded straight in the store, bypassing the aggregator.
    for module_id in ("m1", "m2", "m3", "m4"):
        db.upsert_module_progress("u1", module_id, completed=True, now=NOW)
    assert repository.get_path_progress(learning_path, "u1").completion_percent == 0

    listed = aggregator.list_learning_paths("u1", now=NOW + timedelta(hours=1))
    assert listed[0]["completion_percent"] == 100
    stored = repository.get_path_progress(learning_path, "u1")
    assert stored.status == "completed"
    assert stored.completion_percent == 100
