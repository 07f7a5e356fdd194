"""Course completion and learning-path progress roll-up.

The pure helpers (:func:`is_course_complete`, :func:`compute_path_progress`)
only look at module ids and completion flags. :class:`ProgressAggregator`
wires them to a repository, records module activity and keeps the stored
learning-path aggregates in step with current module completion.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Collection, Dict, Iterable, List, Mapping, Optional, Sequence

from engines.base import log_event, round_percent, utcnow
from engines.records import CourseModule, ModuleProgress
from errors import NotEligible, NotFound, ValidationError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from repositories import Repository

_LOGGER = logging.getLogger(__name__)

PATH_STATUSES = ("enrolled", "completed", "paused")


def _log_json(event: str, payload: Dict[str, Any]) -> None:
    log_event(_LOGGER, event, payload)


@dataclass
class LearningPath:
    id: str
    title: str
    description: Optional[str] = None
    audience: str = "all"
    is_active: bool = True
    estimated_hours: Optional[float] = None


@dataclass
class PathCourse:
    path_id: str
    course_id: str
    course_title: str = ""
    sort_order: int = 0
    required: bool = True


@dataclass(frozen=True)
class PathProgress:
    completed_courses: int
    total_courses: int
    completion_percent: int
    status: str


@dataclass
class LearningPathProgress:
    learning_path_id: str
    user_id: str
    completed_courses: int
    total_courses: int
    completion_percent: int
    status: str
    enrolled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_calculated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "learning_path_id": self.learning_path_id,
            "user_id": self.user_id,
            "completed_courses": self.completed_courses,
            "total_courses": self.total_courses,
            "completion_percent": self.completion_percent,
            "status": self.status,
            "enrolled_at": _iso(self.enrolled_at),
            "completed_at": _iso(self.completed_at),
            "last_calculated_at": _iso(self.last_calculated_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def modules_by_course(modules: Iterable[CourseModule]) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = defaultdict(list)
    for module in modules:
        if module.id not in grouped[module.course_id]:
            grouped[module.course_id].append(module.id)
    return dict(grouped)


def is_course_complete(
    course_id: str,
    module_ids_by_course: Mapping[str, Sequence[str]],
    completed_module_ids: Collection[str],
) -> bool:
    """A course is complete when it has modules and every one is completed."""
    module_ids = module_ids_by_course.get(course_id) or ()
    if not module_ids:
        return False
    return all(module_id in completed_module_ids for module_id in module_ids)


def course_completion_percent(
    course_id: str,
    module_ids_by_course: Mapping[str, Sequence[str]],
    completed_module_ids: Collection[str],
) -> int:
    module_ids = set(module_ids_by_course.get(course_id) or ())
    done = sum(1 for module_id in module_ids if module_id in completed_module_ids)
    percent = round_percent(done, len(module_ids))
    return percent if done == len(module_ids) else min(percent, 99)


def compute_path_progress(
    path_id: str,
    required_course_ids: Iterable[str],
    per_course_complete: Mapping[str, bool],
) -> PathProgress:
    """Roll required-course completion up into a path aggregate.

    Duplicate course ids count once. ``paused`` is never derived here; it is
    an externally managed status.
    """
    unique_ids = list(dict.fromkeys(required_course_ids))
    total = len(unique_ids)
    completed = sum(1 for course_id in unique_ids if per_course_complete.get(course_id))
    finished = total > 0 and completed == total
    percent = round_percent(completed, total)
    if not finished:
        # 100 is reserved for a fully completed path
        percent = min(percent, 99)
    return PathProgress(
        completed_courses=completed,
        total_courses=total,
        completion_percent=percent,
        status="completed" if finished else "enrolled",
    )


class ProgressAggregator:
    """Records module activity and recomputes course/path progress."""

    def __init__(self, repository: "Repository"):
        self.repository = repository

    # ----- module activity -------------------------------------------------
    def record_module_activity(
        self,
        user_id: str,
        module_id: str,
        *,
        completed: Optional[bool] = None,
        watch_time_seconds: int = 0,
        now: Optional[datetime] = None,
    ) -> ModuleProgress:
        if isinstance(watch_time_seconds, bool) or not isinstance(watch_time_seconds, (int, float)):
            raise ValidationError("watch_time_seconds must be a number")
        if watch_time_seconds < 0:
            raise ValidationError("watch_time_seconds must not be negative")
        module = self.repository.get_module(module_id)
        if module is None:
            raise NotFound(f"Unknown module: {module_id}")

        moment = now or utcnow()
        progress = self.repository.record_module_progress(
            user_id,
            module_id,
            completed=bool(completed),
            watch_time_seconds=int(watch_time_seconds),
            now=moment,
        )
        if completed:
            self._refresh_paths_for_course(user_id, module.course_id, moment)
        return progress

    # ----- course level ----------------------------------------------------
    def course_completion(self, user_id: str, course_id: str) -> Dict[str, Any]:
        course = self.repository.get_course(course_id)
        if course is None:
            raise NotFound(f"Unknown course: {course_id}")
        by_course = modules_by_course(self.repository.list_modules([course_id]))
        completed_ids = self.repository.completed_module_ids(user_id)
        module_ids = by_course.get(course_id, [])
        return {
            "course_id": course_id,
            "course_title": course.title,
            "module_count": len(module_ids),
            "completed_modules": sum(1 for module_id in module_ids if module_id in completed_ids),
            "completion_percent": course_completion_percent(course_id, by_course, completed_ids),
            "completed": is_course_complete(course_id, by_course, completed_ids),
        }

    def _course_flags(self, user_id: str, course_ids: Sequence[str]) -> Dict[str, bool]:
        unique_ids = list(dict.fromkeys(course_ids))
        if not unique_ids:
            return {}
        by_course = modules_by_course(self.repository.list_modules(unique_ids))
        completed_ids = self.repository.completed_module_ids(user_id)
        return {
            course_id: is_course_complete(course_id, by_course, completed_ids)
            for course_id in unique_ids
        }

    # ----- learning paths --------------------------------------------------
    def list_learning_paths(
        self,
        user_id: str,
        *,
        include_inactive: bool = False,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Return every visible path with the learner's progress.

        Stored aggregates of enrolled paths are refreshed on the way.
        """
        paths = self.repository.list_learning_paths(include_inactive=include_inactive)
        if not paths:
            return []
        moment = now or utcnow()

        courses_by_path: Dict[str, List[PathCourse]] = defaultdict(list)
        for entry in self.repository.list_path_courses([path.id for path in paths]):
            courses_by_path[entry.path_id].append(entry)
        all_course_ids = [entry.course_id for entries in courses_by_path.values() for entry in entries]
        flags = self._course_flags(user_id, all_course_ids)
        enrolled = {record.learning_path_id: record for record in self.repository.list_path_progress(user_id)}

        items: List[Dict[str, Any]] = []
        for path in paths:
            entries = courses_by_path.get(path.id, [])
            computed = compute_path_progress(
                path.id,
                [entry.course_id for entry in entries if entry.required],
                flags,
            )
            record = enrolled.get(path.id)
            if record is not None:
                record = self._store(path.id, user_id, computed, record, moment)
            items.append(
                {
                    "id": path.id,
                    "title": path.title,
                    "description": path.description,
                    "audience": path.audience,
                    "is_active": path.is_active,
                    "estimated_hours": path.estimated_hours,
                    "courses_count": len(entries),
                    "required_courses": computed.total_courses,
                    "completed_courses": computed.completed_courses,
                    "completion_percent": computed.completion_percent,
                    "is_enrolled": record is not None,
                    "status": record.status if record is not None else None,
                    "enrolled_at": _iso(record.enrolled_at) if record is not None else None,
                    "completed_at": _iso(record.completed_at) if record is not None else None,
                    "courses": [
                        {
                            "course_id": entry.course_id,
                            "course_title": entry.course_title,
                            "sort_order": entry.sort_order,
                            "required": entry.required,
                            "completed": bool(flags.get(entry.course_id)),
                        }
                        for entry in entries
                    ],
                }
            )
        return items

    def enroll(self, user_id: str, path_id: str, *, now: Optional[datetime] = None) -> LearningPathProgress:
        path = self.repository.get_learning_path(path_id)
        if path is None:
            raise NotFound(f"Unknown learning path: {path_id}")
        if not path.is_active:
            raise NotEligible(f"Learning path is not active: {path_id}")
        return self.recompute_path(user_id, path_id, now=now)

    def recompute_path(self, user_id: str, path_id: str, *, now: Optional[datetime] = None) -> LearningPathProgress:
        entries = self.repository.list_path_courses([path_id])
        required = [entry.course_id for entry in entries if entry.required]
        computed = compute_path_progress(path_id, required, self._course_flags(user_id, required))
        existing = self.repository.get_path_progress(path_id, user_id)
        return self._store(path_id, user_id, computed, existing, now or utcnow())

    def set_path_status(
        self,
        user_id: str,
        path_id: str,
        status: str,
        *,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LearningPathProgress:
        """Pause an enrolment, or resume it with ``status="enrolled"``.

        Resuming recomputes the aggregate, so a path finished while paused
        comes back as completed.
        """
        if status not in ("paused", "enrolled"):
            raise ValidationError("status must be one of paused, enrolled")
        existing = self.repository.get_path_progress(path_id, user_id)
        if existing is None:
            raise NotFound(f"Learner {user_id} is not enrolled in learning path {path_id}")
        if existing.status == "completed":
            raise NotEligible(f"Learning path {path_id} is already completed")

        if existing.status != status and not self.repository.set_path_status(path_id, user_id, status):
            raise NotFound(f"Learner {user_id} is not enrolled in learning path {path_id}")
        _log_json(
            "learning_path.status_changed",
            {
                "learning_path_id": path_id,
                "user_id": user_id,
                "status": status,
                "previous_status": existing.status,
                "actor_id": actor_id,
            },
        )
        return self.recompute_path(user_id, path_id, now=now)

    def _refresh_paths_for_course(self, user_id: str, course_id: str, now: datetime) -> None:
        enrolled_ids = [record.learning_path_id for record in self.repository.list_path_progress(user_id)]
        if not enrolled_ids:
            return
        affected = {
            entry.path_id
            for entry in self.repository.list_path_courses(enrolled_ids)
            if entry.course_id == course_id
        }
        for path_id in sorted(affected):
            self.recompute_path(user_id, path_id, now=now)

    def _store(
        self,
        path_id: str,
        user_id: str,
        computed: PathProgress,
        existing: Optional[LearningPathProgress],
        now: datetime,
    ) -> LearningPathProgress:
        status = computed.status
        if status != "completed" and existing is not None and existing.status == "paused":
            status = "paused"

        completed_at: Optional[datetime] = None
        if status == "completed":
            if existing is not None and existing.status == "completed" and existing.completed_at is not None:
                completed_at = existing.completed_at
            else:
                completed_at = now

        record = self.repository.save_path_progress(
            path_id,
            user_id,
            computed,
            status=status,
            completed_at=completed_at,
            now=now,
        )
        _log_json(
            "learning_path.recomputed",
            {
                "learning_path_id": path_id,
                "user_id": user_id,
                "completed_courses": computed.completed_courses,
                "total_courses": computed.total_courses,
                "completion_percent": computed.completion_percent,
                "status": status,
                "previous_status": existing.status if existing is not None else None,
            },
        )
        return record
