"""Quiz attempts: start, submit and author module quizzes against the store."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Tuple

from engines.base import as_utc, log_event, utcnow
from engines.completion import ProgressAggregator
from engines.quiz import (
    QuizPayload,
    QuizResult,
    build_session,
    derive_attempt_seed,
    grade_session,
    is_quiz_payload_ready,
    normalize_quiz_payload,
    parse_quiz_payload,
    public_view,
)
from engines.records import CourseModule, QuizAttempt
from errors import NotEligible, NotFound

if TYPE_CHECKING:  # pragma: no cover - typing only
    from repositories import Repository

_LOGGER = logging.getLogger(__name__)


class QuizAttemptService:
    def __init__(self, repository: "Repository", aggregator: Optional[ProgressAggregator] = None):
        self.repository = repository
        self.aggregator = aggregator or ProgressAggregator(repository)

    def _quiz_module(self, module_id: str) -> Tuple[CourseModule, QuizPayload]:
        module = self.repository.get_module(module_id)
        if module is None:
            raise NotFound(f"Unknown module: {module_id}")
        if module.quiz_payload is None:
            raise NotEligible(f"Module has no quiz: {module_id}")
        payload = normalize_quiz_payload(module.quiz_payload)
        if not is_quiz_payload_ready(payload):
            raise NotEligible(f"Quiz for module {module_id} is not ready")
        return module, payload

    def start(self, user_id: str, module_id: str, seed: Optional[str] = None) -> Dict[str, Any]:
        module, payload = self._quiz_module(module_id)
        attempt_number = self.repository.next_attempt_number(user_id, module_id)
        seed = seed or derive_attempt_seed(user_id, module_id, attempt_number)
        session = build_session(payload, seed)
        view = public_view(session)
        return {
            "module_id": module_id,
            "seed": seed,
            "attempt_number": attempt_number,
            "title": payload.title,
            "pass_threshold": module.pass_threshold,
            "questions": view["questions"],
        }

    def submit(
        self,
        user_id: str,
        module_id: str,
        *,
        seed: str,
        answers: Mapping[str, Any],
        started_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[QuizAttempt, QuizResult]:
        """Grade the attempt, persist it and mark the module completed on a pass."""
        module, payload = self._quiz_module(module_id)
        session = build_session(payload, seed)
        result = grade_session(session, answers, module.pass_threshold)

        submitted_at = now or utcnow()
        attempt = self.repository.record_quiz_attempt(
            user_id,
            module_id,
            seed=seed,
            result=result,
            pass_threshold=module.pass_threshold,
            answers=dict(answers),
            started_at=as_utc(started_at),
            submitted_at=submitted_at,
        )
        if result.passed:
            self.aggregator.record_module_activity(user_id, module_id, completed=True, now=submitted_at)

        log_event(
            _LOGGER,
            "quiz.attempt_graded",
            {
                "user_id": user_id,
                "module_id": module_id,
                "attempt_number": attempt.attempt_number,
                "score_percent": result.score_percent,
                "passed": result.passed,
                "pass_threshold": module.pass_threshold,
            },
        )
        return attempt, result

    def save_quiz(self, module_id: str, raw_payload: Any, pass_threshold: Optional[int] = None) -> QuizPayload:
        """Validate an authored quiz strictly and store it on the module."""
        payload = parse_quiz_payload(raw_payload)
        if not self.repository.save_module_quiz(module_id, payload.to_dict(), pass_threshold):
            raise NotFound(f"Unknown module: {module_id}")
        return payload
