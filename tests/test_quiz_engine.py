"""Tests for quiz presentation, grading and payload validation."""

import pytest

from engines.base import round_percent
from engines.quiz import (
    MAX_OPTIONS,
    QuizPayload,
    QuizQuestion,
    SeededRandom,
    build_session,
    derive_attempt_seed,
    grade_quiz,
    grade_session,
    hash_seed,
    is_quiz_payload_ready,
    normalize_quiz_payload,
    option_ids_for,
    parse_quiz_payload,
    public_view,
    shuffle_in_place,
)
from errors import ValidationError


class _HighRandom:
    """Always returns a value just below 1, which makes Fisher-Yates a no-op."""

    def next(self) -> float:
        return 0.999999


def _identity_factory(_seed):
    return _HighRandom()


def _answers(session, picks):
    return option_ids_for(session, picks)


def test_fnv_hash_matches_reference_values():
    assert hash_seed("") == 0x811C9DC5
    assert hash_seed("a") == 0xE40C292C


def test_seeded_random_stays_in_unit_interval():
    rng = SeededRandom.from_seed("u1:m1:1")
    values = [rng.next() for _ in range(500)]
    assert all(0.0 <= value < 1.0 for value in values)
    assert len(set(values)) > 400


def test_shuffle_is_a_permutation():
    items = list(range(10))
    shuffle_in_place(items, SeededRandom.from_seed("perm"))
    assert sorted(items) == list(range(10))


def test_round_percent_rounds_half_up():
    assert round_percent(1, 8) == 13
    assert round_percent(2, 3) == 67
    assert round_percent(1, 3) == 33
    assert round_percent(0, 0) == 0


def test_same_seed_reproduces_session(quiz_payload):
    payload = normalize_quiz_payload(quiz_payload)
    first = build_session(payload, "u1:m1:1")
    second = build_session(payload, "u1:m1:1")
    assert first == second
    assert public_view(first) == public_view(second)


def test_presented_options_are_permutations(quiz_payload):
    payload = normalize_quiz_payload(quiz_payload)
    session = build_session(payload, "seed-x")
    assert sorted(q.id for q in session.questions) == ["q1", "q2", "q3", "q4"]
    for presented in session.questions:
        canonical = next(q for q in payload.questions if q.id == presented.id)
        indexes = sorted(option.original_index for option in presented.presented_options)
        assert indexes == list(range(len(canonical.options)))
        labels = {option.label for option in presented.presented_options}
        assert labels == set(canonical.options)


def test_seeds_change_question_order(quiz_payload):
    payload = normalize_quiz_payload(quiz_payload)
    orders = {
        tuple(q.id for q in build_session(payload, f"u1:m1:{attempt}").questions)
        for attempt in range(1, 21)
    }
    assert len(orders) > 1


def test_option_order_is_independent_of_later_questions(quiz_payload):
    payload = normalize_quiz_payload(quiz_payload)
    extended = normalize_quiz_payload(
        {
            **quiz_payload,
            "questions": quiz_payload["questions"]
            + [{"id": "q5", "prompt": "Extra?", "options": ["a", "b", "c"], "correct_index": 2}],
        }
    )
    before = build_session(payload, "s")
    after = build_session(extended, "s")
    for question_id in ("q1", "q2", "q3", "q4"):
        assert before.question(question_id).presented_options == after.question(question_id).presented_options


def test_public_view_hides_answer_key(quiz_payload):
    session = build_session(normalize_quiz_payload(quiz_payload), "s")
    view = public_view(session)
    for question in view["questions"]:
        assert set(question) == {"id", "prompt", "options"}
        for option in question["options"]:
            assert set(option) == {"option_id", "label"}
            assert option["option_id"].startswith(f"{question['id']}:")


def test_end_to_end_scores_for_reference_seed(quiz_payload):
    payload = normalize_quiz_payload(quiz_payload)
    seed = derive_attempt_seed("u1", "m1", 1)
    assert seed == "u1:m1:1"
    session = build_session(payload, seed)
    correct = [(q.id, q.correct_index) for q in payload.questions]
    wrong = {q.id: (q.correct_index + 1) % len(q.options) for q in payload.questions}

    all_right = grade_session(session, _answers(session, correct), 70)
    assert (all_right.score_percent, all_right.passed) == (100, True)

    three_right = _answers(session, correct[:3] + [("q4", wrong["q4"])])
    result = grade_session(session, three_right, 70)
    assert (result.correct_answers, result.score_percent, result.passed) == (3, 75, True)

    two_right = _answers(session, correct[:2] + [("q3", wrong["q3"]), ("q4", wrong["q4"])])
    result = grade_session(session, two_right, 70)
    assert (result.correct_answers, result.score_percent, result.passed) == (2, 50, False)


def test_identity_randomness_matches_canonical_grading(quiz_payload):
    payload = normalize_quiz_payload(quiz_payload)
    session = build_session(payload, "any", rng_factory=_identity_factory)
    assert [q.id for q in session.questions] == [q.id for q in payload.questions]
    for presented in session.questions:
        assert [o.original_index for o in presented.presented_options] == list(range(len(presented.presented_options)))

    picks = {"q1": 0, "q2": 0, "q3": 2}
    by_index = grade_quiz(payload, picks, 70)
    by_option = grade_session(session, _answers(session, list(picks.items())), 70)
    assert by_index == by_option
    assert by_index.correct_answers == 2
    assert by_index.score_percent == 50


def test_unanswered_questions_count_as_incorrect(quiz_payload):
    session = build_session(normalize_quiz_payload(quiz_payload), "s")
    result = grade_session(session, {}, 70)
    assert result.total_questions == 4
    assert result.correct_answers == 0
    assert result.score_percent == 0
    assert result.passed is False

    with_none = grade_session(session, {"q1": None}, 70)
    assert with_none.correct_answers == 0


def test_zero_question_quiz_grades_as_failed():
    session = build_session(QuizPayload(title="empty", questions=[]), "s")
    result = grade_session(session, {}, 0)
    assert (result.total_questions, result.correct_answers, result.score_percent, result.passed) == (0, 0, 0, False)


def test_unknown_question_is_rejected(quiz_payload):
    session = build_session(normalize_quiz_payload(quiz_payload), "s")
    with pytest.raises(ValidationError) as excinfo:
        grade_session(session, {"nope": "nope:a"}, 70)
    assert "unknown question 'nope'" in excinfo.value.details["errors"]


def test_option_from_another_question_is_rejected(quiz_payload):
    session = build_session(normalize_quiz_payload(quiz_payload), "s")
    foreign_option = session.question("q2").presented_options[0].option_id
    with pytest.raises(ValidationError):
        grade_session(session, {"q1": foreign_option}, 70)


def test_non_string_answer_is_rejected(quiz_payload):
    session = build_session(normalize_quiz_payload(quiz_payload), "s")
    with pytest.raises(ValidationError):
        grade_session(session, {"q1": 0}, 70)


def test_grade_quiz_rejects_out_of_range_index(quiz_payload):
    payload = normalize_quiz_payload(quiz_payload)
    with pytest.raises(ValidationError):
        grade_quiz(payload, {"q2": 5}, 70)
    with pytest.raises(ValidationError):
        grade_quiz(payload, {"q2": True}, 70)


def test_normalize_fills_defaults():
    payload = normalize_quiz_payload(
        {
            "questions": [
                {"prompt": "Too many", "options": [str(i) for i in range(9)], "correct_index": 8},
                {"id": "keep", "prompt": "Too few", "options": ["only"], "correctIndex": 0},
                "not a question",
            ]
        }
    )
    assert payload.title == ""
    first, second = payload.questions
    assert first.id == "q-1"
    assert len(first.options) == MAX_OPTIONS
    assert first.correct_index == 0
    assert second.id == "keep"
    assert second.options == ["only", ""]


def test_normalize_empty_payload_yields_one_blank_question():
    for value in (None, {}, {"questions": []}, "garbage"):
        payload = normalize_quiz_payload(value)
        assert len(payload.questions) == 1
        assert payload.questions[0].prompt == ""
        assert not is_quiz_payload_ready(payload)


def test_parse_collects_every_problem():
    with pytest.raises(ValidationError) as excinfo:
        parse_quiz_payload(
            {
                "questions": [
                    {"id": "a", "prompt": "", "options": ["x", "y"], "correct_index": 0},
                    {"id": "a", "prompt": "dup", "options": ["x", " "], "correct_index": 0},
                    {"id": "b", "prompt": "range", "options": ["x", "y"], "correct_index": 2},
                    {"id": "c", "prompt": "many", "options": list("abcdefg"), "correct_index": 0},
                ]
            }
        )
    errors = excinfo.value.details["errors"]
    assert "questions[0].prompt is required" in errors
    assert "questions[1].id 'a' is duplicated" in errors
    assert "questions[1].options must not contain blank entries" in errors
    assert "questions[2].correct_index is out of range" in errors
    assert "questions[3].options must have between 2 and 6 entries" in errors


@pytest.mark.parametrize("value", [None, [], {"questions": []}, {"questions": "nope"}])
def test_parse_rejects_empty_or_non_object(value):
    with pytest.raises(ValidationError):
        parse_quiz_payload(value)


def test_parse_accepts_valid_payload(quiz_payload):
    payload = parse_quiz_payload(quiz_payload)
    assert payload.title == "Safeguarding check"
    assert [q.id for q in payload.questions] == ["q1", "q2", "q3", "q4"]
    assert is_quiz_payload_ready(payload)
    assert normalize_quiz_payload(payload.to_dict()) == payload


def test_ready_requires_prompt_and_two_filled_options():
    payload = QuizPayload(
        questions=[QuizQuestion(id="q1", prompt="Ready?", options=["yes", ""], correct_index=0)]
    )
    assert not is_quiz_payload_ready(payload)
    payload.questions[0].options = ["yes", "no"]
    assert is_quiz_payload_ready(payload)
