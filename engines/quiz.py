"""Quiz presentation and grading.

A quiz is authored once as a canonical :class:`QuizPayload` and presented per
attempt as a :class:`QuizSession`. The session is derived from the payload
and a seed string only, so the same seed always reproduces the same question
order and option order, and an attempt can be replayed exactly from its
stored seed.

Grading always happens against the canonical answer key: a presented option
is resolved back to its original index before being compared.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from string import ascii_lowercase
from typing import Any, Callable, Dict, List, Mapping, MutableSequence, Optional, Protocol, Sequence, Tuple, TypeVar

from engines.base import round_percent
from errors import ValidationError

MIN_OPTIONS = 2
MAX_OPTIONS = 6

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193
_LCG_MULTIPLIER = 1664525
_LCG_INCREMENT = 1013904223
_UINT32 = 0xFFFFFFFF

T = TypeVar("T")


@dataclass
class QuizQuestion:
    id: str
    prompt: str
    options: List[str]
    correct_index: int
    explanation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "prompt": self.prompt,
            "options": list(self.options),
            "correct_index": self.correct_index,
        }
        if self.explanation is not None:
            data["explanation"] = self.explanation
        return data


@dataclass
class QuizPayload:
    title: str = ""
    questions: List[QuizQuestion] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "questions": [q.to_dict() for q in self.questions]}


@dataclass(frozen=True)
class PresentedOption:
    option_id: str
    label: str
    original_index: int


@dataclass(frozen=True)
class PresentedQuestion:
    id: str
    prompt: str
    presented_options: Tuple[PresentedOption, ...]
    correct_original_index: int
    explanation: Optional[str] = None

    def original_index_for(self, option_id: str) -> Optional[int]:
        for option in self.presented_options:
            if option.option_id == option_id:
                return option.original_index
        return None

    def option_id_for(self, original_index: int) -> Optional[str]:
        for option in self.presented_options:
            if option.original_index == original_index:
                return option.option_id
        return None


@dataclass(frozen=True)
class QuizSession:
    seed: str
    questions: Tuple[PresentedQuestion, ...]

    def question(self, question_id: str) -> Optional[PresentedQuestion]:
        for presented in self.questions:
            if presented.id == question_id:
                return presented
        return None


@dataclass(frozen=True)
class QuizResult:
    total_questions: int
    correct_answers: int
    score_percent: int
    passed: bool


# ----- seeded randomness ---------------------------------------------------
class RandomSource(Protocol):
    def next(self) -> float:
        """Return the next value in ``[0, 1)``."""


def hash_seed(text: str) -> int:
    """32-bit FNV-1a hash of ``text``'s UTF-8 bytes."""
    value = _FNV_OFFSET
    for byte in text.encode("utf-8"):
        value ^= byte
        value = (value * _FNV_PRIME) & _UINT32
    return value


class SeededRandom:
    """Linear congruential generator over 32-bit state."""

    def __init__(self, state: int):
        self._state = state & _UINT32

    @classmethod
    def from_seed(cls, seed: str) -> "SeededRandom":
        return cls(hash_seed(seed))

    def next(self) -> float:
        self._state = (_LCG_MULTIPLIER * self._state + _LCG_INCREMENT) & _UINT32
        return self._state / (_UINT32 + 1)


RandomFactory = Callable[[str], RandomSource]


def shuffle_in_place(items: MutableSequence[T], rng: RandomSource) -> MutableSequence[T]:
    """Fisher-Yates shuffle driven by ``rng``."""
    for i in range(len(items) - 1, 0, -1):
        j = int(rng.next() * (i + 1))
        items[i], items[j] = items[j], items[i]
    return items


def derive_attempt_seed(user_id: str, module_id: str, attempt_number: int) -> str:
    return f"{user_id}:{module_id}:{int(attempt_number)}"


# ----- payload normalisation ----------------------------------------------
def create_empty_quiz_question(index: int = 1) -> QuizQuestion:
    return QuizQuestion(id=f"q-{index}", prompt="", options=["", "", "", ""], correct_index=0)


def create_empty_quiz_payload() -> QuizPayload:
    return QuizPayload(title="", questions=[create_empty_quiz_question(1)])


def _raw_correct_index(row: Mapping[str, Any]) -> Any:
    if "correct_index" in row:
        return row["correct_index"]
    return row.get("correctIndex")


def normalize_quiz_payload(value: Any) -> QuizPayload:
    """Best-effort conversion of stored quiz data into a :class:`QuizPayload`.

    Used for persisted payloads that may predate validation: missing fields
    fall back to defaults instead of raising.
    """
    if not isinstance(value, Mapping):
        return create_empty_quiz_payload()

    raw_questions = value.get("questions")
    if not isinstance(raw_questions, list):
        raw_questions = []

    questions: List[QuizQuestion] = []
    for index, row in enumerate(raw_questions):
        if not isinstance(row, Mapping):
            continue
        raw_options = row.get("options")
        if not isinstance(raw_options, list):
            raw_options = []
        options = [option if isinstance(option, str) else "" for option in raw_options[:MAX_OPTIONS]]
        while len(options) < MIN_OPTIONS:
            options.append("")

        correct_index = _raw_correct_index(row)
        if isinstance(correct_index, bool) or not isinstance(correct_index, int):
            correct_index = 0
        elif not 0 <= correct_index < len(options):
            correct_index = 0

        question_id = row.get("id")
        prompt = row.get("prompt")
        explanation = row.get("explanation")
        questions.append(
            QuizQuestion(
                id=question_id if isinstance(question_id, str) and question_id else f"q-{index + 1}",
                prompt=prompt if isinstance(prompt, str) else "",
                options=options,
                correct_index=correct_index,
                explanation=explanation if isinstance(explanation, str) else None,
            )
        )

    title = value.get("title")
    return QuizPayload(
        title=title if isinstance(title, str) else "",
        questions=questions or [create_empty_quiz_question(1)],
    )


def parse_quiz_payload(value: Any) -> QuizPayload:
    """Strict authoring-time validation. Raises :class:`ValidationError`."""
    if not isinstance(value, Mapping):
        raise ValidationError("quiz payload must be an object")

    raw_questions = value.get("questions")
    if not isinstance(raw_questions, list) or not raw_questions:
        raise ValidationError("quiz payload must contain at least one question")

    problems: List[str] = []
    seen_ids: set[str] = set()
    questions: List[QuizQuestion] = []
    for index, row in enumerate(raw_questions):
        label = f"questions[{index}]"
        if not isinstance(row, Mapping):
            problems.append(f"{label} must be an object")
            continue

        question_id = row.get("id")
        if not isinstance(question_id, str) or not question_id.strip():
            problems.append(f"{label}.id is required")
            question_id = ""
        elif question_id in seen_ids:
            problems.append(f"{label}.id '{question_id}' is duplicated")
        seen_ids.add(question_id)

        prompt = row.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            problems.append(f"{label}.prompt is required")
            prompt = ""

        options = row.get("options")
        if not isinstance(options, list) or not all(isinstance(option, str) for option in options):
            problems.append(f"{label}.options must be a list of strings")
            options = []
        elif not MIN_OPTIONS <= len(options) <= MAX_OPTIONS:
            problems.append(f"{label}.options must have between {MIN_OPTIONS} and {MAX_OPTIONS} entries")
        elif any(not option.strip() for option in options):
            problems.append(f"{label}.options must not contain blank entries")

        correct_index = _raw_correct_index(row)
        if isinstance(correct_index, bool) or not isinstance(correct_index, int):
            problems.append(f"{label}.correct_index must be an integer")
            correct_index = 0
        elif options and not 0 <= correct_index < len(options):
            problems.append(f"{label}.correct_index is out of range")

        explanation = row.get("explanation")
        if explanation is not None and not isinstance(explanation, str):
            problems.append(f"{label}.explanation must be a string")
            explanation = None

        questions.append(
            QuizQuestion(
                id=question_id,
                prompt=prompt.strip(),
                options=[option.strip() for option in options],
                correct_index=correct_index,
                explanation=explanation,
            )
        )

    if problems:
        raise ValidationError("quiz payload is not valid", details={"errors": problems})

    title = value.get("title")
    return QuizPayload(title=title.strip() if isinstance(title, str) else "", questions=questions)


def is_quiz_payload_ready(payload: QuizPayload) -> bool:
    if not payload.questions:
        return False
    for question in payload.questions:
        filled = [option for option in question.options if option.strip()]
        if not question.prompt.strip() or len(filled) < MIN_OPTIONS:
            return False
    return True


# ----- sessions -------------------------------------------------------------
def _option_id(question_id: str, position: int) -> str:
    return f"{question_id}:{ascii_lowercase[position]}"


def build_session(
    payload: QuizPayload,
    seed: str,
    rng_factory: RandomFactory = SeededRandom.from_seed,
) -> QuizSession:
    """Derive the presentation of ``payload`` for one attempt."""
    order_rng = rng_factory(seed)
    question_order = shuffle_in_place(list(range(len(payload.questions))), order_rng)

    presented: List[PresentedQuestion] = []
    for canonical_index in question_order:
        question = payload.questions[canonical_index]
        option_rng = rng_factory(f"{seed}:{question.id}:{canonical_index}")
        option_order = shuffle_in_place(list(range(len(question.options))), option_rng)
        presented.append(
            PresentedQuestion(
                id=question.id,
                prompt=question.prompt,
                presented_options=tuple(
                    PresentedOption(
                        option_id=_option_id(question.id, position),
                        label=question.options[original_index],
                        original_index=original_index,
                    )
                    for position, original_index in enumerate(option_order)
                ),
                correct_original_index=question.correct_index,
                explanation=question.explanation,
            )
        )
    return QuizSession(seed=seed, questions=tuple(presented))


def public_view(session: QuizSession) -> Dict[str, Any]:
    """Client-facing session: ids and labels only, no answer key."""
    return {
        "seed": session.seed,
        "questions": [
            {
                "id": question.id,
                "prompt": question.prompt,
                "options": [
                    {"option_id": option.option_id, "label": option.label}
                    for option in question.presented_options
                ],
            }
            for question in session.questions
        ],
    }


# ----- grading --------------------------------------------------------------
def _result(correct: int, total: int, pass_threshold: float) -> QuizResult:
    if total == 0:
        return QuizResult(total_questions=0, correct_answers=0, score_percent=0, passed=False)
    score = round_percent(correct, total)
    return QuizResult(
        total_questions=total,
        correct_answers=correct,
        score_percent=score,
        passed=score >= pass_threshold,
    )


def resolve_answers(session: QuizSession, answers: Mapping[str, Any]) -> Dict[str, int]:
    """Map presented option ids back to canonical option indexes.

    ``None`` values are treated as unanswered. Unknown questions or options
    raise :class:`ValidationError`.
    """
    problems: List[str] = []
    resolved: Dict[str, int] = {}
    for question_id, option_id in answers.items():
        question = session.question(question_id)
        if question is None:
            problems.append(f"unknown question '{question_id}'")
            continue
        if option_id is None:
            continue
        if not isinstance(option_id, str):
            problems.append(f"answer for '{question_id}' must be an option id")
            continue
        original_index = question.original_index_for(option_id)
        if original_index is None:
            problems.append(f"option '{option_id}' does not belong to question '{question_id}'")
            continue
        resolved[question_id] = original_index
    if problems:
        raise ValidationError("answers are not valid for this quiz session", details={"errors": problems})
    return resolved


def grade_session(session: QuizSession, answers: Mapping[str, Any], pass_threshold: float) -> QuizResult:
    resolved = resolve_answers(session, answers)
    correct = sum(
        1 for question in session.questions if resolved.get(question.id) == question.correct_original_index
    )
    return _result(correct, len(session.questions), pass_threshold)


def grade_quiz(payload: QuizPayload, answers: Mapping[str, Any], pass_threshold: float) -> QuizResult:
    """Grade answers keyed by canonical option index (no randomisation)."""
    by_id = {question.id: question for question in payload.questions}
    problems: List[str] = []
    for question_id, selected in answers.items():
        question = by_id.get(question_id)
        if question is None:
            problems.append(f"unknown question '{question_id}'")
        elif selected is not None and (
            isinstance(selected, bool)
            or not isinstance(selected, int)
            or not 0 <= selected < len(question.options)
        ):
            problems.append(f"answer for '{question_id}' is not a valid option index")
    if problems:
        raise ValidationError("answers are not valid for this quiz", details={"errors": problems})

    correct = sum(1 for question in payload.questions if answers.get(question.id) == question.correct_index)
    return _result(correct, len(payload.questions), pass_threshold)


def option_ids_for(session: QuizSession, answers: Sequence[Tuple[str, int]]) -> Dict[str, str]:
    """Translate ``(question_id, original_index)`` pairs into presented option ids."""
    translated: Dict[str, str] = {}
    for question_id, original_index in answers:
        question = session.question(question_id)
        if question is None:
            continue
        option_id = question.option_id_for(original_index)
        if option_id is not None:
            translated[question_id] = option_id
    return translated
