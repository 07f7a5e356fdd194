import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10))
    db.init()
    yield str(db_path)
    db._pool.close_all()


@pytest.fixture
def repository(temp_db):
    from repositories import SQLiteRepository

    return SQLiteRepository()


@pytest.fixture
def course_catalog(temp_db):
    """Two learners, one three-module course and an empty course."""
    import db

    db.upsert_user("u1", "Ada", "Lovelace", "ada@example.org")
    db.upsert_user("u2", "Brook", "Taylor", "brook@example.org")
    db.upsert_course("c1", "Safeguarding Basics")
    db.upsert_course("c-empty", "Coming Soon")
    db.upsert_module("m1", "c1", "Welcome", sort_order=1)
    db.upsert_module("m2", "c1", "Policies", sort_order=2)
    db.upsert_module(
        "m3",
        "c1",
        "Check your understanding",
        module_type="quiz",
        sort_order=3,
        pass_threshold=70,
        quiz_payload=sample_quiz_payload(),
    )
    return {"users": ["u1", "u2"], "course_id": "c1", "module_ids": ["m1", "m2", "m3"]}


def sample_quiz_payload():
    return {
        "title": "Safeguarding check",
        "questions": [
            {"id": "q1", "prompt": "Who do you report a concern to?", "options": ["Lead", "Nobody", "A friend"], "correct_index": 0},
            {"id": "q2", "prompt": "When should you report?", "options": ["Later", "Immediately"], "correct_index": 1},
            {"id": "q3", "prompt": "Where are records kept?", "options": ["Inbox", "Desk", "Secure system", "Car"], "correct_index": 2},
            {"id": "q4", "prompt": "Can you promise secrecy?", "options": ["Yes", "No"], "correct_index": 1},
        ],
    }


@pytest.fixture
def quiz_payload():
    return sample_quiz_payload()
