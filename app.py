# app.py — Learning progression service
# - Quiz attempts with seeded presentation and server-side grading
# - Module/course/learning-path progress
# - Assignment submissions and staff grading
# - Risk signals, interventions and course analytics for staff
# - Completion certificates with public verification

import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

import db
from blob_store import create_blob_store
from engines import analytics
from engines.assignments import AssignmentService, assignment_to_dict, submission_to_dict
from engines.assessment import QuizAttemptService
from engines.certificates import CertificateIssuer
from engines.completion import ProgressAggregator
from engines.intervention_system import InterventionSystem
from engines.records import ModuleProgress
from engines.risk import RiskScoringEngine
from env_validation import describe_environment, get_env_bool
from errors import NotFound, ProgressionError, StorageFailure
from repositories import SQLiteRepository
from schemas import (
    AssignmentBody,
    CertificateIssueBody,
    CertificateResponse,
    CertificateVerificationResponse,
    GradeBody,
    InterventionBody,
    ModuleProgressBody,
    ModuleQuizBody,
    PathStatusBody,
    QuizResultResponse,
    QuizSessionResponse,
    QuizStartBody,
    QuizSubmitBody,
    SubmissionBody,
)

logger = logging.getLogger(__name__)

APP_URL = os.getenv("APP_URL") or None
IDENTITY_HEADER = os.getenv("IDENTITY_HEADER") or "X-Authenticated-User"
CERTIFICATE_NUMBER_PREFIX = os.getenv("CERTIFICATE_NUMBER_PREFIX") or "FAV"


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("Configuration in use: %s", describe_environment())
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Learning Progression Engine", version="1.0.0", lifespan=_lifespan)

_PUBLIC_PREFIXES = ("/certificates/verify/",)
_PUBLIC_PATHS = frozenset({"/"})


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _is_public(path: str) -> bool:
    normalized = _normalize_path(path)
    return normalized in _PUBLIC_PATHS or any(normalized.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


@app.middleware("http")
async def _resolve_identity(request: Request, call_next):
    # Identity is asserted by the upstream gateway; request bodies never override it.
    user_id = (request.headers.get(IDENTITY_HEADER) or "").strip() or None
    request.state.user_id = user_id
    if user_id is None and not _is_public(request.url.path):
        return Response(
            status_code=401,
            content=json.dumps({"detail": "missing authenticated user"}),
            media_type="application/json",
        )
    return await call_next(request)


REPOSITORY = SQLiteRepository()
PROGRESS = ProgressAggregator(REPOSITORY)
QUIZ_ATTEMPTS = QuizAttemptService(REPOSITORY, PROGRESS)
RISK_ENGINE = RiskScoringEngine()
INTERVENTIONS = InterventionSystem(REPOSITORY)
ASSIGNMENTS = AssignmentService(REPOSITORY)
CERTIFICATE_ISSUER = CertificateIssuer(
    REPOSITORY,
    create_blob_store(),
    app_url=APP_URL,
    number_prefix=CERTIFICATE_NUMBER_PREFIX,
    inline_fallback=get_env_bool("CERTIFICATE_INLINE_FALLBACK", True),
)


def _current_user(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="missing authenticated user")
    return user_id


def _http_error(exc: ProgressionError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StorageFailure):
        logger.error("Storage failure: %s", exc)
        return HTTPException(status_code=500, detail=str(exc))
    errors = exc.details.get("errors") if exc.details else None
    if errors:
        return HTTPException(status_code=400, detail={"message": str(exc), "errors": errors})
    return HTTPException(status_code=400, detail=str(exc))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _progress_payload(progress: ModuleProgress) -> Dict[str, Any]:
    return {
        "user_id": progress.user_id,
        "module_id": progress.module_id,
        "completed": progress.completed,
        "completed_at": _iso(progress.completed_at),
        "watch_time_seconds": progress.watch_time_seconds,
        "last_watched_at": _iso(progress.last_watched_at),
    }


@app.get("/")
def root():
    return {"status": "ok", "service": app.title, "version": app.version}


# ---------- Quiz ----------
@app.post("/quiz/attempts/start", response_model=QuizSessionResponse)
def start_quiz_attempt(body: QuizStartBody, request: Request):
    user_id = _current_user(request)
    try:
        return QUIZ_ATTEMPTS.start(user_id, body.module_id, body.seed)
    except ProgressionError as exc:
        raise _http_error(exc) from exc


@app.post("/quiz/attempts/submit", response_model=QuizResultResponse)
def submit_quiz_attempt(body: QuizSubmitBody, request: Request):
    user_id = _current_user(request)
    try:
        attempt, result = QUIZ_ATTEMPTS.submit(
            user_id,
            body.module_id,
            seed=body.seed,
            answers=body.answers,
            started_at=body.started_at,
        )
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    return {
        "module_id": body.module_id,
        "attempt_number": attempt.attempt_number,
        "total_questions": result.total_questions,
        "correct_answers": result.correct_answers,
        "score_percent": result.score_percent,
        "passed": result.passed,
        "pass_threshold": attempt.pass_threshold,
        "duration_seconds": attempt.duration_seconds,
        "module_completed": result.passed,
    }


@app.put("/modules/{module_id}/quiz")
def save_module_quiz(module_id: str, body: ModuleQuizBody, request: Request):
    _current_user(request)
    try:
        payload = QUIZ_ATTEMPTS.save_quiz(module_id, body.payload, body.pass_threshold)
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    return {"module_id": module_id, "quiz": payload.to_dict()}


# ---------- Progress ----------
@app.post("/progress/modules/{module_id}")
def record_module_progress(module_id: str, body: ModuleProgressBody, request: Request):
    user_id = _current_user(request)
    try:
        progress = PROGRESS.record_module_activity(
            user_id,
            module_id,
            completed=body.completed,
            watch_time_seconds=body.watch_time_seconds,
        )
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    return _progress_payload(progress)


@app.get("/courses/{course_id}/completion")
def get_course_completion(course_id: str, request: Request):
    user_id = _current_user(request)
    try:
        return PROGRESS.course_completion(user_id, course_id)
    except ProgressionError as exc:
        raise _http_error(exc) from exc


@app.get("/learning-paths")
def list_learning_paths(request: Request):
    user_id = _current_user(request)
    try:
        return {"paths": PROGRESS.list_learning_paths(user_id)}
    except ProgressionError as exc:
        raise _http_error(exc) from exc


@app.post("/learning-paths/{path_id}/enroll")
def enroll_learning_path(path_id: str, request: Request):
    user_id = _current_user(request)
    try:
        progress = PROGRESS.enroll(user_id, path_id)
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    return progress.to_dict()


# ---------- Assignments ----------
@app.post("/assignments/{assignment_id}/submissions")
def submit_assignment(assignment_id: str, body: SubmissionBody, request: Request):
    user_id = _current_user(request)
    try:
        submission = ASSIGNMENTS.submit(user_id, assignment_id, status=body.status)
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    return {"submission": submission_to_dict(submission)}


# ---------- Staff ----------
@app.post("/admin/assignments")
def save_assignment(body: AssignmentBody, request: Request):
    actor_id = _current_user(request)
    try:
        assignment = ASSIGNMENTS.save_assignment(body.model_dump(exclude_unset=True), actor_id)
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    return {"assignment": assignment_to_dict(assignment)}


@app.patch("/admin/assignments/{assignment_id}/submissions/{learner_id}")
def grade_submission(assignment_id: str, learner_id: str, body: GradeBody, request: Request):
    actor_id = _current_user(request)
    try:
        submission = ASSIGNMENTS.grade(
            assignment_id,
            learner_id,
            body.score_percent,
            status=body.status,
            actor_id=actor_id,
        )
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    return {"submission": submission_to_dict(submission)}


@app.post("/admin/learning-paths/{path_id}/progress/{learner_id}/status")
def set_learning_path_status(path_id: str, learner_id: str, body: PathStatusBody, request: Request):
    actor_id = _current_user(request)
    try:
        progress = PROGRESS.set_path_status(learner_id, path_id, body.status, actor_id=actor_id)
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    return progress.to_dict()


@app.get("/admin/interventions")
def list_interventions(request: Request):
    _current_user(request)
    try:
        signals = RISK_ENGINE.build_signals(
            REPOSITORY.list_users(),
            REPOSITORY.list_courses(),
            REPOSITORY.list_modules(),
            REPOSITORY.list_module_progress(),
            REPOSITORY.list_assignments(),
            REPOSITORY.list_submissions(),
        )
        interventions = INTERVENTIONS.list_interventions()
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    return {
        "candidates": [candidate.to_dict() for candidate in INTERVENTIONS.candidates(signals, interventions)],
        "interventions": [item.to_dict() for item in interventions],
    }


@app.post("/admin/interventions")
def save_intervention(body: InterventionBody, request: Request):
    actor_id = _current_user(request)
    try:
        intervention = INTERVENTIONS.save(body.model_dump(exclude_none=True), actor_id)
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    return {"intervention": intervention.to_dict()}


@app.get("/admin/analytics")
def get_course_analytics(request: Request):
    _current_user(request)
    try:
        modules = REPOSITORY.list_modules()
        return {
            "quiz_performance": analytics.quiz_performance(modules, REPOSITORY.list_quiz_attempts()),
            "module_dropoff": analytics.module_dropoff(modules, REPOSITORY.list_module_progress()),
        }
    except ProgressionError as exc:
        raise _http_error(exc) from exc


# ---------- Certificates ----------
@app.post("/certificates/issue", response_model=CertificateResponse)
def issue_certificate(body: CertificateIssueBody, request: Request):
    user_id = _current_user(request)
    try:
        certificate = CERTIFICATE_ISSUER.issue(user_id, body.course_id)
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    return certificate.to_dict()


@app.get("/certificates/verify/{token}", response_model=CertificateVerificationResponse)
def verify_certificate(token: str):
    try:
        verification = CERTIFICATE_ISSUER.verify(token)
    except ProgressionError as exc:
        raise _http_error(exc) from exc
    if not verification.valid:
        return JSONResponse(status_code=404, content={"valid": False})
    return verification.to_dict()
