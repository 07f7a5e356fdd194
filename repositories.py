"""Storage ports used by the engines and the SQLite adapter behind them."""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from functools import wraps
from typing import Any, Callable, List, Mapping, Optional, Sequence, Set, TypeVar

import db
from engines.base import utcnow
from engines.certificates import Certificate
from engines.completion import LearningPath, LearningPathProgress, PathCourse, PathProgress
from engines.intervention_system import Intervention
from engines.quiz import QuizResult
from engines.records import (
    Assignment,
    Course,
    CourseModule,
    ModuleProgress,
    QuizAttempt,
    Submission,
    User,
    SUBMISSION_STATUSES,
)
from engines.risk import validate_passing_percent
from errors import StorageFailure, ValidationError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


class CatalogRepository(ABC):
    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def list_users(self) -> List[User]: ...

    @abstractmethod
    def get_course(self, course_id: str) -> Optional[Course]: ...

    @abstractmethod
    def list_courses(self) -> List[Course]: ...

    @abstractmethod
    def get_module(self, module_id: str) -> Optional[CourseModule]: ...

    @abstractmethod
    def list_modules(self, course_ids: Optional[Sequence[str]] = None) -> List[CourseModule]: ...

    @abstractmethod
    def save_module_quiz(self, module_id: str, payload: Mapping[str, Any], pass_threshold: Optional[int] = None) -> bool: ...


class ProgressRepository(ABC):
    @abstractmethod
    def record_module_progress(
        self,
        user_id: str,
        module_id: str,
        *,
        completed: bool,
        watch_time_seconds: int,
        now: datetime,
    ) -> ModuleProgress: ...

    @abstractmethod
    def list_module_progress(self, user_id: Optional[str] = None) -> List[ModuleProgress]: ...

    @abstractmethod
    def completed_module_ids(self, user_id: str) -> Set[str]: ...


class QuizAttemptRepository(ABC):
    @abstractmethod
    def next_attempt_number(self, user_id: str, module_id: str) -> int: ...

    @abstractmethod
    def record_quiz_attempt(
        self,
        user_id: str,
        module_id: str,
        *,
        seed: str,
        result: QuizResult,
        pass_threshold: int,
        answers: Mapping[str, Any],
        started_at: Optional[datetime],
        submitted_at: datetime,
    ) -> QuizAttempt: ...

    @abstractmethod
    def list_quiz_attempts(self, user_id: Optional[str] = None, module_id: Optional[str] = None) -> List[QuizAttempt]: ...


class LearningPathRepository(ABC):
    @abstractmethod
    def get_learning_path(self, path_id: str) -> Optional[LearningPath]: ...

    @abstractmethod
    def list_learning_paths(self, include_inactive: bool = False) -> List[LearningPath]: ...

    @abstractmethod
    def list_path_courses(self, path_ids: Sequence[str]) -> List[PathCourse]: ...

    @abstractmethod
    def get_path_progress(self, path_id: str, user_id: str) -> Optional[LearningPathProgress]: ...

    @abstractmethod
    def list_path_progress(self, user_id: str) -> List[LearningPathProgress]: ...

    @abstractmethod
    def save_path_progress(
        self,
        path_id: str,
        user_id: str,
        progress: PathProgress,
        *,
        status: str,
        completed_at: Optional[datetime],
        now: datetime,
    ) -> LearningPathProgress: ...

    @abstractmethod
    def set_path_status(self, path_id: str, user_id: str, status: str) -> bool:
        """Overwrite the stored status only; False when the learner is not enrolled."""


class AssignmentRepository(ABC):
    @abstractmethod
    def save_assignment(self, assignment: Assignment) -> Assignment: ...

    @abstractmethod
    def get_assignment(self, assignment_id: str) -> Optional[Assignment]: ...

    @abstractmethod
    def list_assignments(self) -> List[Assignment]: ...

    @abstractmethod
    def save_submission(self, submission: Submission) -> Submission: ...

    @abstractmethod
    def get_submission(self, assignment_id: str, user_id: str) -> Optional[Submission]: ...

    @abstractmethod
    def list_submissions(self) -> List[Submission]: ...


class InterventionRepository(ABC):
    @abstractmethod
    def create_intervention(self, fields: Mapping[str, Any], *, now: datetime) -> Intervention: ...

    @abstractmethod
    def update_intervention(self, intervention_id: int, fields: Mapping[str, Any], *, now: datetime) -> Optional[Intervention]: ...

    @abstractmethod
    def get_intervention(self, intervention_id: int) -> Optional[Intervention]: ...

    @abstractmethod
    def list_interventions(self) -> List[Intervention]: ...


class CertificateRepository(ABC):
    @abstractmethod
    def get_certificate(self, user_id: str, course_id: str) -> Optional[Certificate]: ...

    @abstractmethod
    def get_certificate_by_token(self, token: str) -> Optional[Certificate]: ...

    @abstractmethod
    def insert_certificate_if_absent(self, certificate: Certificate) -> Certificate:
        """Store ``certificate`` unless a complete one exists; return the stored row."""


class Repository(
    CatalogRepository,
    ProgressRepository,
    QuizAttemptRepository,
    LearningPathRepository,
    AssignmentRepository,
    InterventionRepository,
    CertificateRepository,
    ABC,
):
    """Every port the service needs, backed by one store."""


def _storage_errors(func: F) -> F:
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except sqlite3.Error as exc:
            logger.error("Store operation %s failed: %s", func.__name__, exc, exc_info=True)
            raise StorageFailure(f"Store operation {func.__name__} failed") from exc

    return wrapper  # type: ignore[return-value]


# ----- row mapping ----------------------------------------------------------
def _user(row: Mapping[str, Any]) -> User:
    return User(
        id=row["user_id"],
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name") or "",
        email=row.get("email"),
    )


def _course(row: Mapping[str, Any]) -> Course:
    return Course(id=row["course_id"], title=row.get("title") or "")


def _module(row: Mapping[str, Any]) -> CourseModule:
    return CourseModule(
        id=row["module_id"],
        course_id=row["course_id"],
        title=row.get("title") or "",
        module_type=row.get("module_type") or "video",
        sort_order=int(row.get("sort_order") or 0),
        pass_threshold=int(row["pass_threshold"]) if row.get("pass_threshold") is not None else 70,
        quiz_payload=row.get("quiz_payload"),
    )


def _progress(row: Mapping[str, Any]) -> ModuleProgress:
    return ModuleProgress(
        user_id=row["user_id"],
        module_id=row["module_id"],
        completed=bool(row.get("completed")),
        completed_at=db.parse_timestamp(row.get("completed_at")),
        watch_time_seconds=int(row.get("watch_time_seconds") or 0),
        last_watched_at=db.parse_timestamp(row.get("last_watched_at")),
    )


def _attempt(row: Mapping[str, Any]) -> QuizAttempt:
    return QuizAttempt(
        id=row.get("id"),
        user_id=row["user_id"],
        module_id=row["module_id"],
        attempt_number=int(row["attempt_number"]),
        seed=row["seed"],
        score_percent=int(row["score_percent"]),
        correct_answers=int(row["correct_answers"]),
        total_questions=int(row["total_questions"]),
        passed=bool(row["passed"]),
        pass_threshold=int(row["pass_threshold"]),
        answers=row.get("answers") or {},
        started_at=db.parse_timestamp(row.get("started_at")),
        submitted_at=db.parse_timestamp(row.get("submitted_at")),
        duration_seconds=row.get("duration_seconds"),
    )


def _path(row: Mapping[str, Any]) -> LearningPath:
    return LearningPath(
        id=row["path_id"],
        title=row["title"],
        description=row.get("description"),
        audience=row.get("audience") or "all",
        is_active=bool(row.get("is_active")),
        estimated_hours=row.get("estimated_hours"),
    )


def _path_course(row: Mapping[str, Any]) -> PathCourse:
    return PathCourse(
        path_id=row["path_id"],
        course_id=row["course_id"],
        course_title=row.get("course_title") or "",
        sort_order=int(row.get("sort_order") or 0),
        required=bool(row.get("required")),
    )


def _path_progress(row: Mapping[str, Any]) -> LearningPathProgress:
    return LearningPathProgress(
        learning_path_id=row["learning_path_id"],
        user_id=row["user_id"],
        completed_courses=int(row["completed_courses"]),
        total_courses=int(row["total_courses"]),
        completion_percent=int(row["completion_percent"]),
        status=row["status"],
        enrolled_at=db.parse_timestamp(row.get("enrolled_at")),
        completed_at=db.parse_timestamp(row.get("completed_at")),
        last_calculated_at=db.parse_timestamp(row.get("last_calculated_at")),
    )


def _assignment(row: Mapping[str, Any]) -> Assignment:
    return Assignment(
        id=row["assignment_id"],
        course_id=row["course_id"],
        title=row.get("title") or "",
        due_at=db.parse_timestamp(row.get("due_at")),
        passing_percent=int(row["passing_percent"]),
        is_published=bool(row.get("is_published")),
    )


def _submission(row: Mapping[str, Any]) -> Submission:
    return Submission(
        assignment_id=row["assignment_id"],
        user_id=row["user_id"],
        status=row["status"],
        score_percent=row.get("score_percent"),
        submitted_at=db.parse_timestamp(row.get("submitted_at")),
        graded_at=db.parse_timestamp(row.get("graded_at")),
    )


def _intervention(row: Mapping[str, Any]) -> Intervention:
    return Intervention(
        id=int(row["id"]),
        user_id=row["user_id"],
        course_id=row.get("course_id"),
        learning_path_id=row.get("learning_path_id"),
        risk_level=row["risk_level"],
        risk_score=int(row["risk_score"]),
        reason=row["reason"],
        assigned_to=row.get("assigned_to"),
        status=row["status"],
        action_plan=row.get("action_plan"),
        due_at=db.parse_timestamp(row.get("due_at")),
        last_contacted_at=db.parse_timestamp(row.get("last_contacted_at")),
        resolved_at=db.parse_timestamp(row.get("resolved_at")),
        metadata=row.get("metadata") or {},
        created_at=db.parse_timestamp(row.get("created_at")),
        updated_at=db.parse_timestamp(row.get("updated_at")),
    )


def _certificate(row: Mapping[str, Any]) -> Certificate:
    return Certificate(
        user_id=row["user_id"],
        course_id=row["course_id"],
        issued_at=db.parse_timestamp(row.get("issued_at")),
        verification_token=row.get("verification_token"),
        certificate_number=row.get("certificate_number"),
        certificate_url=row.get("certificate_url"),
        completion_rate=int(row.get("completion_rate") or 0),
        metadata=row.get("metadata") or {},
    )


class SQLiteRepository(Repository):
    """Adapter over the module-level functions in :mod:`db`."""

    # ----- catalog ---------------------------------------------------------
    @_storage_errors
    def get_user(self, user_id: str) -> Optional[User]:
        row = db.get_user(user_id)
        return _user(row) if row else None

    @_storage_errors
    def list_users(self) -> List[User]:
        return [_user(row) for row in db.list_users()]

    @_storage_errors
    def get_course(self, course_id: str) -> Optional[Course]:
        row = db.get_course(course_id)
        return _course(row) if row else None

    @_storage_errors
    def list_courses(self) -> List[Course]:
        return [_course(row) for row in db.list_courses()]

    @_storage_errors
    def get_module(self, module_id: str) -> Optional[CourseModule]:
        row = db.get_module(module_id)
        return _module(row) if row else None

    @_storage_errors
    def list_modules(self, course_ids: Optional[Sequence[str]] = None) -> List[CourseModule]:
        return [_module(row) for row in db.list_modules(course_ids)]

    @_storage_errors
    def save_module_quiz(self, module_id: str, payload: Mapping[str, Any], pass_threshold: Optional[int] = None) -> bool:
        return db.set_module_quiz(module_id, payload, pass_threshold)

    # ----- module progress -------------------------------------------------
    @_storage_errors
    def record_module_progress(
        self,
        user_id: str,
        module_id: str,
        *,
        completed: bool,
        watch_time_seconds: int,
        now: datetime,
    ) -> ModuleProgress:
        row = db.upsert_module_progress(
            user_id,
            module_id,
            completed=completed,
            watch_time_seconds=watch_time_seconds,
            now=now,
        )
        return _progress(row)

    @_storage_errors
    def list_module_progress(self, user_id: Optional[str] = None) -> List[ModuleProgress]:
        return [_progress(row) for row in db.list_module_progress(user_id)]

    @_storage_errors
    def completed_module_ids(self, user_id: str) -> Set[str]:
        return db.list_completed_module_ids(user_id)

    # ----- quiz attempts ---------------------------------------------------
    @_storage_errors
    def next_attempt_number(self, user_id: str, module_id: str) -> int:
        return db.next_attempt_number(user_id, module_id)

    @_storage_errors
    def record_quiz_attempt(
        self,
        user_id: str,
        module_id: str,
        *,
        seed: str,
        result: QuizResult,
        pass_threshold: int,
        answers: Mapping[str, Any],
        started_at: Optional[datetime],
        submitted_at: datetime,
    ) -> QuizAttempt:
        row = db.record_quiz_attempt(
            user_id,
            module_id,
            seed=seed,
            score_percent=result.score_percent,
            correct_answers=result.correct_answers,
            total_questions=result.total_questions,
            passed=result.passed,
            pass_threshold=pass_threshold,
            answers=answers,
            started_at=started_at,
            submitted_at=submitted_at,
        )
        return _attempt(row)

    @_storage_errors
    def list_quiz_attempts(self, user_id: Optional[str] = None, module_id: Optional[str] = None) -> List[QuizAttempt]:
        return [_attempt(row) for row in db.list_quiz_attempts(user_id, module_id)]

    # ----- learning paths --------------------------------------------------
    @_storage_errors
    def get_learning_path(self, path_id: str) -> Optional[LearningPath]:
        row = db.get_learning_path(path_id)
        return _path(row) if row else None

    @_storage_errors
    def list_learning_paths(self, include_inactive: bool = False) -> List[LearningPath]:
        return [_path(row) for row in db.list_learning_paths(include_inactive)]

    @_storage_errors
    def list_path_courses(self, path_ids: Sequence[str]) -> List[PathCourse]:
        return [_path_course(row) for row in db.list_learning_path_courses(list(path_ids))]

    @_storage_errors
    def get_path_progress(self, path_id: str, user_id: str) -> Optional[LearningPathProgress]:
        row = db.get_learning_path_progress(path_id, user_id)
        return _path_progress(row) if row else None

    @_storage_errors
    def list_path_progress(self, user_id: str) -> List[LearningPathProgress]:
        return [_path_progress(row) for row in db.list_learning_path_progress(user_id)]

    @_storage_errors
    def save_path_progress(
        self,
        path_id: str,
        user_id: str,
        progress: PathProgress,
        *,
        status: str,
        completed_at: Optional[datetime],
        now: datetime,
    ) -> LearningPathProgress:
        row = db.upsert_learning_path_progress(
            path_id,
            user_id,
            completed_courses=progress.completed_courses,
            total_courses=progress.total_courses,
            completion_percent=progress.completion_percent,
            status=status,
            completed_at=completed_at,
            now=now,
        )
        return _path_progress(row)

    @_storage_errors
    def set_path_status(self, path_id: str, user_id: str, status: str) -> bool:
        return db.set_learning_path_status(path_id, user_id, status)

    # ----- assignments -----------------------------------------------------
    @_storage_errors
    def save_assignment(self, assignment: Assignment) -> Assignment:
        passing_percent = validate_passing_percent(assignment.passing_percent)
        db.upsert_assignment(
            assignment.id,
            assignment.course_id,
            title=assignment.title,
            due_at=assignment.due_at,
            passing_percent=passing_percent,
            is_published=assignment.is_published,
        )
        assignment.passing_percent = passing_percent
        return assignment

    @_storage_errors
    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        row = db.get_assignment(assignment_id)
        return _assignment(row) if row else None

    @_storage_errors
    def list_assignments(self) -> List[Assignment]:
        return [_assignment(row) for row in db.list_assignments()]

    @_storage_errors
    def save_submission(self, submission: Submission) -> Submission:
        if submission.status not in SUBMISSION_STATUSES:
            raise ValidationError(f"Unknown submission status: {submission.status}")
        db.upsert_submission(
            submission.assignment_id,
            submission.user_id,
            status=submission.status,
            score_percent=submission.score_percent,
            submitted_at=submission.submitted_at,
            graded_at=submission.graded_at,
        )
        return submission

    @_storage_errors
    def get_submission(self, assignment_id: str, user_id: str) -> Optional[Submission]:
        row = db.get_submission(assignment_id, user_id)
        return _submission(row) if row else None

    @_storage_errors
    def list_submissions(self) -> List[Submission]:
        return [_submission(row) for row in db.list_submissions()]

    # ----- interventions ---------------------------------------------------
    @_storage_errors
    def create_intervention(self, fields: Mapping[str, Any], *, now: datetime) -> Intervention:
        return _intervention(db.insert_intervention(fields, now=now))

    @_storage_errors
    def update_intervention(self, intervention_id: int, fields: Mapping[str, Any], *, now: datetime) -> Optional[Intervention]:
        row = db.update_intervention(intervention_id, fields, now=now)
        return _intervention(row) if row else None

    @_storage_errors
    def get_intervention(self, intervention_id: int) -> Optional[Intervention]:
        row = db.get_intervention(intervention_id)
        return _intervention(row) if row else None

    @_storage_errors
    def list_interventions(self) -> List[Intervention]:
        return [_intervention(row) for row in db.list_interventions()]

    # ----- certificates ----------------------------------------------------
    @_storage_errors
    def get_certificate(self, user_id: str, course_id: str) -> Optional[Certificate]:
        row = db.get_certificate(user_id, course_id)
        return _certificate(row) if row else None

    @_storage_errors
    def get_certificate_by_token(self, token: str) -> Optional[Certificate]:
        row = db.get_certificate_by_token(token)
        return _certificate(row) if row else None

    @_storage_errors
    def insert_certificate_if_absent(self, certificate: Certificate) -> Certificate:
        row = db.insert_certificate_if_absent(
            certificate.user_id,
            certificate.course_id,
            issued_at=certificate.issued_at or utcnow(),
            verification_token=certificate.verification_token,
            certificate_number=certificate.certificate_number,
            certificate_url=certificate.certificate_url,
            completion_rate=certificate.completion_rate,
            metadata=certificate.metadata,
        )
        if not row:
            raise StorageFailure("Certificate row missing after write")
        return _certificate(row)
