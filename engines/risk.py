"""Engagement risk scoring for (learner, course) pairs.

Each started pair is scored from four observable signals: module completion,
time since the last recorded activity, overdue assignments and assignments
scored below their passing mark. Scores are capped at 100 and only pairs
reaching the medium band produce a :class:`RiskSignal`.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from engines.base import as_utc, round_percent, utcnow
from engines.records import Assignment, Course, CourseModule, ModuleProgress, Submission, User
from errors import NotEligible

_SECONDS_PER_DAY = 86400
_OPEN_SUBMISSION_STATUSES = ("draft", "returned")


@dataclass
class RiskSignal:
    key: str
    user_id: str
    user_name: str
    user_email: Optional[str]
    course_id: str
    course_title: str
    risk_score: int
    risk_level: str  # 'medium' or 'high'
    reason: str
    completion_percent: int
    overdue_assignments: int
    low_score_assignments: int
    last_active_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "user_email": self.user_email,
            "course_id": self.course_id,
            "course_title": self.course_title,
            "risk_score": self.risk_score,
            "risk_level": self.risk_level,
            "reason": self.reason,
            "completion_percent": self.completion_percent,
            "overdue_assignments": self.overdue_assignments,
            "low_score_assignments": self.low_score_assignments,
            "last_active_at": self.last_active_at.isoformat() if self.last_active_at else None,
        }


def validate_passing_percent(value: Any) -> int:
    """Return ``value`` as an integer percentage or raise ``NotEligible``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise NotEligible("passing_percent must be a number between 0 and 100")
    if value < 0 or value > 100:
        raise NotEligible(
            f"passing_percent must be between 0 and 100, got {value}",
            details={"passing_percent": value},
        )
    return int(math.floor(value + 0.5))


def _display_name(user: User) -> str:
    return user.display_name or user.email or user.id


def _plural(noun: str, count: int) -> str:
    return noun if count == 1 else f"{noun}s"


class RiskScoringEngine:
    def __init__(self):
        self.low_completion_threshold = 35
        self.partial_completion_threshold = 55
        self.low_completion_points = 35
        self.partial_completion_points = 20

        self.no_activity_points = 30
        self.long_inactivity_days = 30
        self.long_inactivity_points = 45
        self.short_inactivity_days = 14
        self.short_inactivity_points = 30

        self.overdue_points_each = 15
        self.overdue_points_cap = 30
        self.low_score_points_each = 10
        self.low_score_points_cap = 20
        self.stalled_start_points = 10  # nothing completed yet work is already overdue

        self.high_threshold = 70
        self.medium_threshold = 45
        self.max_reasons = 3

    def score(
        self,
        user: User,
        course: Course,
        module_ids: Iterable[str],
        progress_rows: Sequence[ModuleProgress],
        assignments: Sequence[Assignment],
        submissions: Sequence[Submission],
        now: Optional[datetime] = None,
    ) -> Optional[RiskSignal]:
        """Score one (user, course) pair; ``None`` when not started or below the medium band."""
        moment = as_utc(now) or utcnow()
        course_modules = set(module_ids)

        progress = [
            row for row in progress_rows if row.user_id == user.id and row.module_id in course_modules
        ]
        published = [
            assignment
            for assignment in assignments
            if assignment.course_id == course.id and assignment.is_published
        ]
        if not progress and not published:
            return None

        completed = {row.module_id for row in progress if row.completed}
        completion_percent = round_percent(len(completed), len(course_modules))

        published_ids = {assignment.id for assignment in published}
        user_submissions = {
            submission.assignment_id: submission
            for submission in submissions
            if submission.user_id == user.id and submission.assignment_id in published_ids
        }

        overdue = 0
        low_scores = 0
        for assignment in published:
            submission = user_submissions.get(assignment.id)
            due_at = as_utc(assignment.due_at)
            if due_at is not None and due_at < moment:
                if submission is None or submission.status in _OPEN_SUBMISSION_STATUSES:
                    overdue += 1
            if (
                submission is not None
                and submission.score_percent is not None
                and submission.score_percent < assignment.passing_percent
            ):
                low_scores += 1

        last_active_at = self._last_active(progress, user_submissions.values())

        total = 0
        reasons: List[str] = []

        if completion_percent < self.low_completion_threshold:
            total += self.low_completion_points
            reasons.append(f"completion is below {self.low_completion_threshold}%")
        elif completion_percent < self.partial_completion_threshold:
            total += self.partial_completion_points
            reasons.append(f"completion is below {self.partial_completion_threshold}%")

        if last_active_at is None:
            total += self.no_activity_points
            reasons.append("no activity recorded")
        else:
            idle_days = math.floor((moment - last_active_at).total_seconds() / _SECONDS_PER_DAY)
            if idle_days >= self.long_inactivity_days:
                total += self.long_inactivity_points
                reasons.append(f"inactive for {self.long_inactivity_days}+ days")
            elif idle_days >= self.short_inactivity_days:
                total += self.short_inactivity_points
                reasons.append(f"inactive for {self.short_inactivity_days}+ days")

        if overdue > 0:
            total += min(self.overdue_points_cap, self.overdue_points_each * overdue)
            reasons.append(f"{overdue} overdue {_plural('assignment', overdue)}")

        if low_scores > 0:
            total += min(self.low_score_points_cap, self.low_score_points_each * low_scores)
            reasons.append(f"{low_scores} low-score {_plural('assignment', low_scores)}")

        if completion_percent == 0 and overdue > 0:
            total += self.stalled_start_points

        risk_score = min(100, total)
        level = self.level_for(risk_score)
        if level is None:
            return None

        return RiskSignal(
            key=f"{user.id}:{course.id}",
            user_id=user.id,
            user_name=_display_name(user),
            user_email=user.email,
            course_id=course.id,
            course_title=course.title,
            risk_score=risk_score,
            risk_level=level,
            reason=", ".join(reasons[: self.max_reasons]) or "engagement risk detected",
            completion_percent=completion_percent,
            overdue_assignments=overdue,
            low_score_assignments=low_scores,
            last_active_at=last_active_at,
        )

    def level_for(self, risk_score: int) -> Optional[str]:
        if risk_score >= self.high_threshold:
            return "high"
        if risk_score >= self.medium_threshold:
            return "medium"
        return None

    @staticmethod
    def _last_active(progress: Iterable[ModuleProgress], submissions: Iterable[Submission]) -> Optional[datetime]:
        stamps: List[datetime] = []
        for row in progress:
            stamps.extend(as_utc(value) for value in (row.completed_at, row.last_watched_at) if value is not None)
        for submission in submissions:
            stamps.extend(
                as_utc(value) for value in (submission.graded_at, submission.submitted_at) if value is not None
            )
        return max(stamps) if stamps else None

    def build_signals(
        self,
        users: Sequence[User],
        courses: Sequence[Course],
        modules: Sequence[CourseModule],
        progress_rows: Sequence[ModuleProgress],
        assignments: Sequence[Assignment],
        submissions: Sequence[Submission],
        now: Optional[datetime] = None,
    ) -> List[RiskSignal]:
        """Score every (user, course) pair; highest risk first, then by learner name."""
        moment = as_utc(now) or utcnow()
        module_ids: Dict[str, List[str]] = defaultdict(list)
        for module in modules:
            module_ids[module.course_id].append(module.id)

        progress_by_user: Dict[str, List[ModuleProgress]] = defaultdict(list)
        for row in progress_rows:
            progress_by_user[row.user_id].append(row)
        submissions_by_user: Dict[str, List[Submission]] = defaultdict(list)
        for submission in submissions:
            submissions_by_user[submission.user_id].append(submission)

        signals: List[RiskSignal] = []
        for user in users:
            for course in courses:
                signal = self.score(
                    user,
                    course,
                    module_ids.get(course.id, ()),
                    progress_by_user.get(user.id, ()),
                    assignments,
                    submissions_by_user.get(user.id, ()),
                    moment,
                )
                if signal is not None:
                    signals.append(signal)

        signals.sort(key=lambda s: (-s.risk_score, s.user_name.lower(), s.course_title.lower(), s.key))
        return signals
