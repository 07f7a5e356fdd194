"""Pydantic request and response models for the progression API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field

__all__ = [
    "QuizStartBody",
    "QuizSubmitBody",
    "ModuleQuizBody",
    "ModuleProgressBody",
    "InterventionBody",
    "AssignmentBody",
    "SubmissionBody",
    "GradeBody",
    "PathStatusBody",
    "CertificateIssueBody",
    "PresentedOptionModel",
    "PresentedQuestionModel",
    "QuizSessionResponse",
    "QuizResultResponse",
    "CertificateResponse",
    "CertificateVerificationResponse",
]


class QuizStartBody(BaseModel):
    module_id: str
    seed: str | None = None


class QuizSubmitBody(BaseModel):
    module_id: str
    seed: str = Field(min_length=1)
    answers: Dict[str, Any] = Field(default_factory=dict, description="Question id mapped to the chosen option id.")
    started_at: datetime | None = None


class ModuleQuizBody(BaseModel):
    payload: Dict[str, Any]
    pass_threshold: int | None = Field(default=None, ge=0, le=100)


class ModuleProgressBody(BaseModel):
    completed: bool | None = None
    watch_time_seconds: int = Field(default=0, ge=0)


class InterventionBody(BaseModel):
    id: int | None = None
    user_id: str | None = None
    course_id: str | None = None
    learning_path_id: str | None = None
    risk_level: str | None = None
    risk_score: float | None = None
    reason: str | None = None
    assigned_to: str | None = None
    status: str | None = None
    action_plan: str | None = None
    due_at: str | None = None
    last_contacted_at: str | None = None
    metadata: Dict[str, Any] | None = None


class AssignmentBody(BaseModel):
    id: str | None = None
    course_id: str | None = None
    title: str | None = None
    due_at: str | None = None
    passing_percent: float | None = None
    is_published: bool | None = None


class SubmissionBody(BaseModel):
    status: str = "submitted"


class GradeBody(BaseModel):
    score_percent: float
    status: str = "graded"


class PathStatusBody(BaseModel):
    status: str


class CertificateIssueBody(BaseModel):
    course_id: str = Field(min_length=1)


class PresentedOptionModel(BaseModel):
    option_id: str
    label: str


class PresentedQuestionModel(BaseModel):
    id: str
    prompt: str
    options: List[PresentedOptionModel]


class QuizSessionResponse(BaseModel):
    module_id: str
    seed: str
    attempt_number: int
    title: str
    pass_threshold: int
    questions: List[PresentedQuestionModel]


class QuizResultResponse(BaseModel):
    module_id: str
    attempt_number: int
    total_questions: int
    correct_answers: int
    score_percent: int
    passed: bool
    pass_threshold: int
    duration_seconds: int | None = None
    module_completed: bool


class CertificateResponse(BaseModel):
    issued_at: datetime | None = None
    certificate_url: str | None = None
    verification_url: str | None = None
    certificate_number: str | None = None


class CertificateVerificationResponse(BaseModel):
    valid: Literal[True]
    issued_at: datetime | None = None
    completion_rate: int | None = None
    certificate_url: str | None = None
    certificate_number: str | None = None
    recipient_name: str | None = None
    course_title: str | None = None
