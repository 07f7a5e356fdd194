"""Assignment authoring, learner submissions and staff grading.

Submissions and grades written here are what the risk engine reads for its
overdue and low-score signals.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from engines.base import log_event, parse_datetime, utcnow
from engines.records import Assignment, Submission
from engines.risk import validate_passing_percent
from errors import NotEligible, NotFound, ValidationError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from repositories import Repository

_LOGGER = logging.getLogger(__name__)

LEARNER_SUBMISSION_STATUSES = ("draft", "submitted")
GRADE_STATUSES = ("graded", "returned")
DEFAULT_PASSING_PERCENT = 70


def _log_json(event: str, payload: Dict[str, Any]) -> None:
    log_event(_LOGGER, event, payload)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def assignment_to_dict(assignment: Assignment) -> Dict[str, Any]:
    return {
        "id": assignment.id,
        "course_id": assignment.course_id,
        "title": assignment.title,
        "due_at": _iso(assignment.due_at),
        "passing_percent": assignment.passing_percent,
        "is_published": assignment.is_published,
    }


def submission_to_dict(submission: Submission) -> Dict[str, Any]:
    return {
        "assignment_id": submission.assignment_id,
        "user_id": submission.user_id,
        "status": submission.status,
        "score_percent": submission.score_percent,
        "submitted_at": _iso(submission.submitted_at),
        "graded_at": _iso(submission.graded_at),
    }


class AssignmentService:
    """Creates assignments, stores learner submissions and records grades."""

    def __init__(self, repository: "Repository"):
        self.repository = repository

    def save_assignment(self, payload: Mapping[str, Any], actor_id: Optional[str] = None) -> Assignment:
        """Create an assignment, or update the one named by ``payload['id']``.

        Fields missing from an update keep their stored values.
        """
        if not isinstance(payload, Mapping):
            raise ValidationError("Assignment payload must be an object")

        assignment_id = str(payload.get("id") or "").strip() or None
        existing = self.repository.get_assignment(assignment_id) if assignment_id else None
        if assignment_id and existing is None and payload.get("course_id") is None:
            raise NotFound(f"Unknown assignment: {assignment_id}")

        errors: List[str] = []
        course_id = str(payload.get("course_id") or "").strip() or (existing.course_id if existing else "")
        if not course_id:
            errors.append("course_id is required")

        raw_title = payload.get("title")
        title = str(raw_title).strip() if raw_title is not None else (existing.title if existing else "")
        if not title:
            errors.append("title is required")

        due_at = existing.due_at if existing else None
        if "due_at" in payload:
            raw_due = payload.get("due_at")
            due_at = parse_datetime(raw_due)
            if raw_due not in (None, "") and due_at is None:
                errors.append("due_at must be an ISO-8601 timestamp")

        if errors:
            raise ValidationError("; ".join(errors), details={"errors": errors})

        raw_percent = payload.get("passing_percent")
        if raw_percent is None:
            raw_percent = existing.passing_percent if existing else DEFAULT_PASSING_PERCENT
        passing_percent = validate_passing_percent(raw_percent)

        if self.repository.get_course(course_id) is None:
            raise NotFound(f"Unknown course: {course_id}")

        raw_published = payload.get("is_published")
        if raw_published is None:
            is_published = existing.is_published if existing else False
        else:
            is_published = bool(raw_published)

        saved = self.repository.save_assignment(
            Assignment(
                id=assignment_id or uuid.uuid4().hex,
                course_id=course_id,
                title=title,
                due_at=due_at,
                passing_percent=passing_percent,
                is_published=is_published,
            )
        )
        _log_json(
            "assignment.saved",
            {
                "assignment_id": saved.id,
                "course_id": saved.course_id,
                "passing_percent": saved.passing_percent,
                "is_published": saved.is_published,
                "created": existing is None,
                "actor_id": actor_id,
            },
        )
        return saved

    def submit(
        self,
        user_id: str,
        assignment_id: str,
        *,
        status: str = "submitted",
        now: Optional[datetime] = None,
    ) -> Submission:
        """Save the learner's draft or final submission.

        A grade already given to a returned submission stays on the row until
        it is graded again.
        """
        if status not in LEARNER_SUBMISSION_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(LEARNER_SUBMISSION_STATUSES)}")
        assignment = self.repository.get_assignment(assignment_id)
        if assignment is None:
            raise NotFound(f"Unknown assignment: {assignment_id}")
        if not assignment.is_published:
            raise NotEligible(f"Assignment is not published: {assignment_id}")

        existing = self.repository.get_submission(assignment_id, user_id)
        if existing is not None and existing.status == "graded":
            raise NotEligible(f"Submission for {assignment_id} is already graded")

        moment = now or utcnow()
        submission = self.repository.save_submission(
            Submission(
                assignment_id=assignment_id,
                user_id=user_id,
                status=status,
                score_percent=existing.score_percent if existing else None,
                submitted_at=moment if status == "submitted" else None,
                graded_at=existing.graded_at if existing else None,
            )
        )
        _log_json(
            "assignment.submitted",
            {"assignment_id": assignment_id, "user_id": user_id, "status": status},
        )
        return submission

    def grade(
        self,
        assignment_id: str,
        user_id: str,
        score_percent: Any,
        *,
        status: str = "graded",
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Submission:
        """Record a score (clamped to 0-100) and either grade or return the work."""
        if status not in GRADE_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(GRADE_STATUSES)}")
        if (
            isinstance(score_percent, bool)
            or not isinstance(score_percent, (int, float))
            or not math.isfinite(score_percent)
        ):
            raise ValidationError("score_percent must be a number")
        score = max(0.0, min(100.0, float(score_percent)))

        existing = self.repository.get_submission(assignment_id, user_id)
        if existing is None:
            raise NotFound(f"No submission from {user_id} for assignment {assignment_id}")
        if existing.status == "draft":
            raise NotEligible(f"Submission for {assignment_id} is still a draft")

        moment = now or utcnow()
        submission = self.repository.save_submission(
            Submission(
                assignment_id=assignment_id,
                user_id=user_id,
                status=status,
                score_percent=score,
                submitted_at=existing.submitted_at,
                graded_at=moment if status == "graded" else None,
            )
        )
        _log_json(
            "assignment.graded",
            {
                "assignment_id": assignment_id,
                "user_id": user_id,
                "status": status,
                "score_percent": score,
                "actor_id": actor_id,
            },
        )
        return submission
