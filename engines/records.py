"""Row-level records the engines read from the store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

SUBMISSION_STATUSES = ("draft", "submitted", "returned", "graded")


@dataclass
class User:
    id: str
    first_name: str = ""
    last_name: str = ""
    email: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Course:
    id: str
    title: str


@dataclass
class CourseModule:
    id: str
    course_id: str
    title: str = ""
    module_type: str = "video"
    sort_order: int = 0
    pass_threshold: int = 70
    quiz_payload: Optional[Dict[str, Any]] = None


@dataclass
class ModuleProgress:
    user_id: str
    module_id: str
    completed: bool = False
    completed_at: Optional[datetime] = None
    watch_time_seconds: int = 0
    last_watched_at: Optional[datetime] = None


@dataclass
class Assignment:
    id: str
    course_id: str
    passing_percent: int = 70
    due_at: Optional[datetime] = None
    is_published: bool = True
    title: str = ""


@dataclass
class Submission:
    assignment_id: str
    user_id: str
    status: str
    score_percent: Optional[float] = None
    submitted_at: Optional[datetime] = None
    graded_at: Optional[datetime] = None


@dataclass
class QuizAttempt:
    user_id: str
    module_id: str
    attempt_number: int
    seed: str
    score_percent: int
    correct_answers: int
    total_questions: int
    passed: bool
    pass_threshold: int = 70
    answers: Dict[str, Any] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    id: Optional[int] = None
