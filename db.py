import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from db_pool import SQLiteConnectionPool
from engines.base import parse_datetime

DB_PATH = os.getenv("DB_PATH", "data.db")
DEFAULT_PASS_THRESHOLD = int(os.getenv("DEFAULT_PASS_THRESHOLD") or 70)

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

_ATTEMPT_INSERT_RETRIES = 3


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


def iso_timestamp(value: Optional[datetime] = None) -> str:
    """Render ``value`` (default: now) as an ISO-8601 UTC string."""
    moment = value or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp into an aware UTC datetime (``None`` if unparseable)."""
    return parse_datetime(value)


def _row_to_dict(row: Optional[sqlite3.Row], *, bools: Sequence[str] = (), json_fields: Sequence[str] = ()) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    entry = dict(row)
    for key in bools:
        if key in entry and entry[key] is not None:
            entry[key] = bool(entry[key])
    for key in json_fields:
        if key in entry:
            entry[key] = _decode_json_field(entry[key])
    return entry


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS users (
              user_id     TEXT PRIMARY KEY,
              first_name  TEXT NOT NULL DEFAULT '',
              last_name   TEXT NOT NULL DEFAULT '',
              email       TEXT,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS courses (
              course_id   TEXT PRIMARY KEY,
              title       TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS course_modules (
              module_id      TEXT PRIMARY KEY,
              course_id      TEXT NOT NULL,
              title          TEXT NOT NULL,
              module_type    TEXT NOT NULL DEFAULT 'video',
              sort_order     INTEGER DEFAULT 0,
              pass_threshold INTEGER NOT NULL DEFAULT 70,
              quiz_payload   TEXT,
              created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(course_id) REFERENCES courses(course_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_course_modules_course ON course_modules(course_id, sort_order);

            CREATE TABLE IF NOT EXISTS module_progress (
              user_id            TEXT NOT NULL,
              module_id          TEXT NOT NULL,
              completed          INTEGER NOT NULL DEFAULT 0,
              completed_at       TEXT,
              watch_time_seconds INTEGER NOT NULL DEFAULT 0,
              last_watched_at    TEXT,
              updated_at         TEXT,
              PRIMARY KEY (user_id, module_id),
              FOREIGN KEY(module_id) REFERENCES course_modules(module_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS quiz_attempts (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id          TEXT NOT NULL,
              module_id        TEXT NOT NULL,
              attempt_number   INTEGER NOT NULL,
              seed             TEXT NOT NULL,
              score_percent    INTEGER NOT NULL,
              correct_answers  INTEGER NOT NULL,
              total_questions  INTEGER NOT NULL,
              passed           INTEGER NOT NULL,
              pass_threshold   INTEGER NOT NULL,
              answers          TEXT,
              started_at       TEXT,
              submitted_at     TEXT NOT NULL,
              duration_seconds INTEGER,
              UNIQUE(user_id, module_id, attempt_number),
              FOREIGN KEY(module_id) REFERENCES course_modules(module_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_quiz_attempts_module ON quiz_attempts(module_id);

            CREATE TABLE IF NOT EXISTS learning_paths (
              path_id         TEXT PRIMARY KEY,
              title           TEXT NOT NULL,
              description     TEXT,
              audience        TEXT NOT NULL DEFAULT 'all',
              is_active       INTEGER NOT NULL DEFAULT 1,
              estimated_hours REAL,
              created_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS learning_path_courses (
              path_id    TEXT NOT NULL,
              course_id  TEXT NOT NULL,
              sort_order INTEGER NOT NULL DEFAULT 0,
              required   INTEGER NOT NULL DEFAULT 1,
              PRIMARY KEY (path_id, course_id),
              FOREIGN KEY(path_id) REFERENCES learning_paths(path_id) ON DELETE CASCADE,
              FOREIGN KEY(course_id) REFERENCES courses(course_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS learning_path_progress (
              learning_path_id   TEXT NOT NULL,
              user_id            TEXT NOT NULL,
              completed_courses  INTEGER NOT NULL DEFAULT 0,
              total_courses      INTEGER NOT NULL DEFAULT 0,
              completion_percent INTEGER NOT NULL DEFAULT 0,
              status             TEXT NOT NULL DEFAULT 'enrolled'
                                 CHECK (status IN ('enrolled', 'completed', 'paused')),
              enrolled_at        TEXT NOT NULL,
              completed_at       TEXT,
              last_calculated_at TEXT,
              PRIMARY KEY (learning_path_id, user_id),
              FOREIGN KEY(learning_path_id) REFERENCES learning_paths(path_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS assignments (
              assignment_id   TEXT PRIMARY KEY,
              course_id       TEXT NOT NULL,
              title           TEXT NOT NULL DEFAULT '',
              due_at          TEXT,
              passing_percent INTEGER NOT NULL DEFAULT 70
                              CHECK (passing_percent BETWEEN 0 AND 100),
              is_published    INTEGER NOT NULL DEFAULT 0,
              FOREIGN KEY(course_id) REFERENCES courses(course_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS assignment_submissions (
              assignment_id TEXT NOT NULL,
              user_id       TEXT NOT NULL,
              status        TEXT NOT NULL
                            CHECK (status IN ('draft', 'submitted', 'returned', 'graded')),
              score_percent REAL,
              submitted_at  TEXT,
              graded_at     TEXT,
              PRIMARY KEY (assignment_id, user_id),
              FOREIGN KEY(assignment_id) REFERENCES assignments(assignment_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS interventions (
              id                INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id           TEXT NOT NULL,
              course_id         TEXT,
              learning_path_id  TEXT,
              risk_level        TEXT NOT NULL,
              risk_score        INTEGER NOT NULL,
              reason            TEXT NOT NULL,
              assigned_to       TEXT,
              status            TEXT NOT NULL DEFAULT 'open',
              action_plan       TEXT,
              due_at            TEXT,
              last_contacted_at TEXT,
              resolved_at       TEXT,
              metadata          TEXT,
              created_at        TEXT NOT NULL,
              updated_at        TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_interventions_user ON interventions(user_id, course_id);

            CREATE TABLE IF NOT EXISTS certificates (
              user_id            TEXT NOT NULL,
              course_id          TEXT NOT NULL,
              issued_at          TEXT,
              verification_token TEXT UNIQUE,
              certificate_number TEXT,
              certificate_url    TEXT,
              completion_rate    INTEGER NOT NULL DEFAULT 100,
              metadata           TEXT,
              PRIMARY KEY (user_id, course_id)
            );
            """
        )
        con.commit()


# -------------- catalog --------------
def upsert_user(user_id: str, first_name: str = "", last_name: str = "", email: Optional[str] = None):
    _exec(
        """
        INSERT INTO users(user_id, first_name, last_name, email) VALUES (?,?,?,?)
        ON CONFLICT(user_id) DO UPDATE SET
          first_name=excluded.first_name,
          last_name=excluded.last_name,
          email=excluded.email
        """,
        (user_id, first_name, last_name, email),
    )


def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT user_id, first_name, last_name, email FROM users WHERE user_id = ?",
        (user_id,),
    )
    return _row_to_dict(rows[0]) if rows else None


def list_users() -> list[Dict[str, Any]]:
    rows = _query("SELECT user_id, first_name, last_name, email FROM users ORDER BY user_id")
    return [dict(row) for row in rows]


def upsert_course(course_id: str, title: str):
    _exec(
        """
        INSERT INTO courses(course_id, title) VALUES (?,?)
        ON CONFLICT(course_id) DO UPDATE SET title=excluded.title
        """,
        (course_id, title),
    )


def get_course(course_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT course_id, title FROM courses WHERE course_id = ?", (course_id,))
    return _row_to_dict(rows[0]) if rows else None


def list_courses() -> list[Dict[str, Any]]:
    rows = _query("SELECT course_id, title FROM courses ORDER BY course_id")
    return [dict(row) for row in rows]


def upsert_module(
    module_id: str,
    course_id: str,
    title: str,
    module_type: str = "video",
    sort_order: int = 0,
    pass_threshold: Optional[int] = None,
    quiz_payload: Optional[Mapping[str, Any]] = None,
):
    _exec(
        """
        INSERT INTO course_modules(module_id, course_id, title, module_type, sort_order, pass_threshold, quiz_payload)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(module_id) DO UPDATE SET
          course_id=excluded.course_id,
          title=excluded.title,
          module_type=excluded.module_type,
          sort_order=excluded.sort_order,
          pass_threshold=excluded.pass_threshold,
          quiz_payload=COALESCE(excluded.quiz_payload, course_modules.quiz_payload)
        """,
        (
            module_id,
            course_id,
            title,
            module_type,
            int(sort_order),
            DEFAULT_PASS_THRESHOLD if pass_threshold is None else int(pass_threshold),
            json_dumps(quiz_payload) if quiz_payload is not None else None,
        ),
    )


def set_module_quiz(module_id: str, quiz_payload: Mapping[str, Any], pass_threshold: Optional[int] = None) -> bool:
    cur = _exec(
        """
        UPDATE course_modules
        SET quiz_payload = ?, module_type = 'quiz', pass_threshold = COALESCE(?, pass_threshold)
        WHERE module_id = ?
        """,
        (json_dumps(quiz_payload), None if pass_threshold is None else int(pass_threshold), module_id),
    )
    return cur.rowcount > 0


_MODULE_COLUMNS = "module_id, course_id, title, module_type, sort_order, pass_threshold, quiz_payload"


def get_module(module_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(f"SELECT {_MODULE_COLUMNS} FROM course_modules WHERE module_id = ?", (module_id,))
    return _row_to_dict(rows[0], json_fields=("quiz_payload",)) if rows else None


def list_modules(course_ids: Optional[Sequence[str]] = None) -> list[Dict[str, Any]]:
    if course_ids is not None:
        if not course_ids:
            return []
        rows = _query(
            f"SELECT {_MODULE_COLUMNS} FROM course_modules WHERE course_id IN ({_placeholders(course_ids)}) "
            "ORDER BY course_id, sort_order, module_id",
            list(course_ids),
        )
    else:
        rows = _query(f"SELECT {_MODULE_COLUMNS} FROM course_modules ORDER BY course_id, sort_order, module_id")
    return [_row_to_dict(row, json_fields=("quiz_payload",)) for row in rows]


# -------------- module progress --------------
_PROGRESS_COLUMNS = "user_id, module_id, completed, completed_at, watch_time_seconds, last_watched_at"


def upsert_module_progress(
    user_id: str,
    module_id: str,
    *,
    completed: bool = False,
    watch_time_seconds: int = 0,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Record an interaction; one row per (user, module), completion is sticky."""
    stamp = iso_timestamp(now)
    watch_seconds = max(0, int(watch_time_seconds))
    _exec(
        """
        INSERT INTO module_progress(user_id, module_id, completed, completed_at, watch_time_seconds, last_watched_at, updated_at)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(user_id, module_id) DO UPDATE SET
          completed=MAX(module_progress.completed, excluded.completed),
          completed_at=COALESCE(module_progress.completed_at, excluded.completed_at),
          watch_time_seconds=module_progress.watch_time_seconds + excluded.watch_time_seconds,
          last_watched_at=COALESCE(excluded.last_watched_at, module_progress.last_watched_at),
          updated_at=excluded.updated_at
        """,
        (
            user_id,
            module_id,
            1 if completed else 0,
            stamp if completed else None,
            watch_seconds,
            stamp if watch_seconds > 0 else None,
            stamp,
        ),
    )
    return get_module_progress(user_id, module_id) or {}


def get_module_progress(user_id: str, module_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_PROGRESS_COLUMNS} FROM module_progress WHERE user_id = ? AND module_id = ?",
        (user_id, module_id),
    )
    return _row_to_dict(rows[0], bools=("completed",)) if rows else None


def list_module_progress(user_id: Optional[str] = None) -> list[Dict[str, Any]]:
    if user_id:
        rows = _query(
            f"SELECT {_PROGRESS_COLUMNS} FROM module_progress WHERE user_id = ? ORDER BY module_id",
            (user_id,),
        )
    else:
        rows = _query(f"SELECT {_PROGRESS_COLUMNS} FROM module_progress ORDER BY user_id, module_id")
    return [_row_to_dict(row, bools=("completed",)) for row in rows]


def list_completed_module_ids(user_id: str) -> set[str]:
    rows = _query(
        "SELECT module_id FROM module_progress WHERE user_id = ? AND completed = 1",
        (user_id,),
    )
    return {row["module_id"] for row in rows}


# -------------- quiz attempts --------------
_ATTEMPT_COLUMNS = (
    "id, user_id, module_id, attempt_number, seed, score_percent, correct_answers, total_questions, "
    "passed, pass_threshold, answers, started_at, submitted_at, duration_seconds"
)


def next_attempt_number(user_id: str, module_id: str) -> int:
    rows = _query(
        "SELECT COALESCE(MAX(attempt_number), 0) + 1 AS next_number FROM quiz_attempts WHERE user_id = ? AND module_id = ?",
        (user_id, module_id),
    )
    return int(rows[0]["next_number"]) if rows else 1


def record_quiz_attempt(
    user_id: str,
    module_id: str,
    *,
    seed: str,
    score_percent: int,
    correct_answers: int,
    total_questions: int,
    passed: bool,
    pass_threshold: int,
    answers: Mapping[str, Any],
    started_at: Optional[datetime],
    submitted_at: datetime,
) -> Dict[str, Any]:
    """Persist a graded attempt; the attempt number is assigned by the insert itself."""
    duration: Optional[int] = None
    if started_at is not None:
        duration = max(0, int((submitted_at - started_at).total_seconds()))

    params = (
        user_id,
        module_id,
        seed,
        int(score_percent),
        int(correct_answers),
        int(total_questions),
        1 if passed else 0,
        int(pass_threshold),
        json_dumps(dict(answers)),
        iso_timestamp(started_at) if started_at is not None else None,
        iso_timestamp(submitted_at),
        duration,
        user_id,
        module_id,
    )
    last_error: Optional[sqlite3.IntegrityError] = None
    for _ in range(_ATTEMPT_INSERT_RETRIES):
        try:
            cur = _exec(
                """
                INSERT INTO quiz_attempts(
                  user_id, module_id, attempt_number, seed, score_percent, correct_answers, total_questions,
                  passed, pass_threshold, answers, started_at, submitted_at, duration_seconds
                )
                SELECT ?, ?, COALESCE(MAX(attempt_number), 0) + 1, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                FROM quiz_attempts WHERE user_id = ? AND module_id = ?
                """,
                params,
            )
        except sqlite3.IntegrityError as exc:
            # Another attempt took the same number between read and write.
            last_error = exc
            continue
        rows = _query(f"SELECT {_ATTEMPT_COLUMNS} FROM quiz_attempts WHERE id = ?", (cur.lastrowid,))
        return _row_to_dict(rows[0], bools=("passed",), json_fields=("answers",))
    raise sqlite3.IntegrityError(
        f"No free attempt number for {user_id}/{module_id} after {_ATTEMPT_INSERT_RETRIES} tries"
    ) from last_error


def list_quiz_attempts(user_id: Optional[str] = None, module_id: Optional[str] = None) -> list[Dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if user_id:
        clauses.append("user_id = ?")
        params.append(user_id)
    if module_id:
        clauses.append("module_id = ?")
        params.append(module_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = _query(
        f"SELECT {_ATTEMPT_COLUMNS} FROM quiz_attempts {where} ORDER BY module_id, user_id, attempt_number",
        params,
    )
    return [_row_to_dict(row, bools=("passed",), json_fields=("answers",)) for row in rows]


# -------------- learning paths --------------
def upsert_learning_path(
    path_id: str,
    title: str,
    description: Optional[str] = None,
    audience: str = "all",
    is_active: bool = True,
    estimated_hours: Optional[float] = None,
):
    _exec(
        """
        INSERT INTO learning_paths(path_id, title, description, audience, is_active, estimated_hours)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(path_id) DO UPDATE SET
          title=excluded.title,
          description=excluded.description,
          audience=excluded.audience,
          is_active=excluded.is_active,
          estimated_hours=excluded.estimated_hours
        """,
        (path_id, title, description, audience, 1 if is_active else 0, estimated_hours),
    )


_PATH_COLUMNS = "path_id, title, description, audience, is_active, estimated_hours, created_at"


def get_learning_path(path_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(f"SELECT {_PATH_COLUMNS} FROM learning_paths WHERE path_id = ?", (path_id,))
    return _row_to_dict(rows[0], bools=("is_active",)) if rows else None


def list_learning_paths(include_inactive: bool = False) -> list[Dict[str, Any]]:
    where = "" if include_inactive else "WHERE is_active = 1"
    rows = _query(f"SELECT {_PATH_COLUMNS} FROM learning_paths {where} ORDER BY created_at DESC, path_id")
    return [_row_to_dict(row, bools=("is_active",)) for row in rows]


def upsert_learning_path_course(path_id: str, course_id: str, sort_order: int = 0, required: bool = True):
    _exec(
        """
        INSERT INTO learning_path_courses(path_id, course_id, sort_order, required) VALUES (?,?,?,?)
        ON CONFLICT(path_id, course_id) DO UPDATE SET
          sort_order=excluded.sort_order,
          required=excluded.required
        """,
        (path_id, course_id, int(sort_order), 1 if required else 0),
    )


def list_learning_path_courses(path_ids: Sequence[str]) -> list[Dict[str, Any]]:
    if not path_ids:
        return []
    rows = _query(
        f"""
        SELECT lpc.path_id, lpc.course_id, lpc.sort_order, lpc.required, c.title AS course_title
        FROM learning_path_courses lpc
        LEFT JOIN courses c ON c.course_id = lpc.course_id
        WHERE lpc.path_id IN ({_placeholders(path_ids)})
        ORDER BY lpc.path_id, lpc.sort_order, lpc.course_id
        """,
        list(path_ids),
    )
    return [_row_to_dict(row, bools=("required",)) for row in rows]


_PATH_PROGRESS_COLUMNS = (
    "learning_path_id, user_id, completed_courses, total_courses, completion_percent, status, "
    "enrolled_at, completed_at, last_calculated_at"
)


def get_learning_path_progress(path_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_PATH_PROGRESS_COLUMNS} FROM learning_path_progress WHERE learning_path_id = ? AND user_id = ?",
        (path_id, user_id),
    )
    return _row_to_dict(rows[0]) if rows else None


def list_learning_path_progress(user_id: str) -> list[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_PATH_PROGRESS_COLUMNS} FROM learning_path_progress WHERE user_id = ?",
        (user_id,),
    )
    return [dict(row) for row in rows]


def upsert_learning_path_progress(
    path_id: str,
    user_id: str,
    *,
    completed_courses: int,
    total_courses: int,
    completion_percent: int,
    status: str,
    completed_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    stamp = iso_timestamp(now)
    _exec(
        """
        INSERT INTO learning_path_progress(
          learning_path_id, user_id, completed_courses, total_courses, completion_percent,
          status, enrolled_at, completed_at, last_calculated_at
        ) VALUES (?,?,?,?,?,?,?,?,?)
        ON CONFLICT(learning_path_id, user_id) DO UPDATE SET
          completed_courses=excluded.completed_courses,
          total_courses=excluded.total_courses,
          completion_percent=excluded.completion_percent,
          status=excluded.status,
          completed_at=excluded.completed_at,
          last_calculated_at=excluded.last_calculated_at
        """,
        (
            path_id,
            user_id,
            int(completed_courses),
            int(total_courses),
            int(completion_percent),
            status,
            stamp,
            iso_timestamp(completed_at) if completed_at is not None else None,
            stamp,
        ),
    )
    return get_learning_path_progress(path_id, user_id) or {}


def set_learning_path_status(path_id: str, user_id: str, status: str) -> bool:
    cur = _exec(
        "UPDATE learning_path_progress SET status = ? WHERE learning_path_id = ? AND user_id = ?",
        (status, path_id, user_id),
    )
    return cur.rowcount > 0


# -------------- assignments --------------
def upsert_assignment(
    assignment_id: str,
    course_id: str,
    *,
    title: str = "",
    due_at: Optional[datetime] = None,
    passing_percent: int = 70,
    is_published: bool = True,
):
    _exec(
        """
        INSERT INTO assignments(assignment_id, course_id, title, due_at, passing_percent, is_published)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(assignment_id) DO UPDATE SET
          course_id=excluded.course_id,
          title=excluded.title,
          due_at=excluded.due_at,
          passing_percent=excluded.passing_percent,
          is_published=excluded.is_published
        """,
        (
            assignment_id,
            course_id,
            title,
            iso_timestamp(due_at) if due_at is not None else None,
            int(passing_percent),
            1 if is_published else 0,
        ),
    )


_ASSIGNMENT_COLUMNS = "assignment_id, course_id, title, due_at, passing_percent, is_published"


def get_assignment(assignment_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(f"SELECT {_ASSIGNMENT_COLUMNS} FROM assignments WHERE assignment_id = ?", (assignment_id,))
    return _row_to_dict(rows[0], bools=("is_published",)) if rows else None


def list_assignments() -> list[Dict[str, Any]]:
    rows = _query(f"SELECT {_ASSIGNMENT_COLUMNS} FROM assignments ORDER BY assignment_id")
    return [_row_to_dict(row, bools=("is_published",)) for row in rows]


def upsert_submission(
    assignment_id: str,
    user_id: str,
    *,
    status: str,
    score_percent: Optional[float] = None,
    submitted_at: Optional[datetime] = None,
    graded_at: Optional[datetime] = None,
):
    _exec(
        """
        INSERT INTO assignment_submissions(assignment_id, user_id, status, score_percent, submitted_at, graded_at)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(assignment_id, user_id) DO UPDATE SET
          status=excluded.status,
          score_percent=excluded.score_percent,
          submitted_at=excluded.submitted_at,
          graded_at=excluded.graded_at
        """,
        (
            assignment_id,
            user_id,
            status,
            None if score_percent is None else float(score_percent),
            iso_timestamp(submitted_at) if submitted_at is not None else None,
            iso_timestamp(graded_at) if graded_at is not None else None,
        ),
    )


_SUBMISSION_COLUMNS = "assignment_id, user_id, status, score_percent, submitted_at, graded_at"


def get_submission(assignment_id: str, user_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_SUBMISSION_COLUMNS} FROM assignment_submissions WHERE assignment_id = ? AND user_id = ?",
        (assignment_id, user_id),
    )
    return _row_to_dict(rows[0]) if rows else None


def list_submissions() -> list[Dict[str, Any]]:
    rows = _query(f"SELECT {_SUBMISSION_COLUMNS} FROM assignment_submissions")
    return [dict(row) for row in rows]


# -------------- interventions --------------
_INTERVENTION_FIELDS = (
    "user_id",
    "course_id",
    "learning_path_id",
    "risk_level",
    "risk_score",
    "reason",
    "assigned_to",
    "status",
    "action_plan",
    "due_at",
    "last_contacted_at",
    "resolved_at",
    "metadata",
)
_INTERVENTION_COLUMNS = "id, " + ", ".join(_INTERVENTION_FIELDS) + ", created_at, updated_at"


def _intervention_params(fields: Mapping[str, Any]) -> list[Any]:
    params: list[Any] = []
    for name in _INTERVENTION_FIELDS:
        value = fields.get(name)
        if name == "metadata":
            value = json_dumps(value) if value is not None else None
        elif isinstance(value, datetime):
            value = iso_timestamp(value)
        params.append(value)
    return params


def insert_intervention(fields: Mapping[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    stamp = iso_timestamp(now)
    columns = ", ".join(_INTERVENTION_FIELDS)
    cur = _exec(
        f"INSERT INTO interventions({columns}, created_at, updated_at) "
        f"VALUES ({_placeholders(_INTERVENTION_FIELDS)}, ?, ?)",
        _intervention_params(fields) + [stamp, stamp],
    )
    return get_intervention(int(cur.lastrowid)) or {}


def update_intervention(intervention_id: int, fields: Mapping[str, Any], now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    assignments = ", ".join(f"{name} = ?" for name in _INTERVENTION_FIELDS)
    cur = _exec(
        f"UPDATE interventions SET {assignments}, updated_at = ? WHERE id = ?",
        _intervention_params(fields) + [iso_timestamp(now), int(intervention_id)],
    )
    if cur.rowcount == 0:
        return None
    return get_intervention(int(intervention_id))


def get_intervention(intervention_id: int) -> Optional[Dict[str, Any]]:
    rows = _query(f"SELECT {_INTERVENTION_COLUMNS} FROM interventions WHERE id = ?", (int(intervention_id),))
    return _row_to_dict(rows[0], json_fields=("metadata",)) if rows else None


def list_interventions() -> list[Dict[str, Any]]:
    rows = _query(f"SELECT {_INTERVENTION_COLUMNS} FROM interventions ORDER BY created_at DESC, id DESC")
    return [_row_to_dict(row, json_fields=("metadata",)) for row in rows]


# -------------- certificates --------------
_CERTIFICATE_COLUMNS = (
    "user_id, course_id, issued_at, verification_token, certificate_number, certificate_url, completion_rate, metadata"
)


def get_certificate(user_id: str, course_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_CERTIFICATE_COLUMNS} FROM certificates WHERE user_id = ? AND course_id = ?",
        (user_id, course_id),
    )
    return _row_to_dict(rows[0], json_fields=("metadata",)) if rows else None


def get_certificate_by_token(token: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        f"SELECT {_CERTIFICATE_COLUMNS} FROM certificates WHERE verification_token = ?",
        (token,),
    )
    return _row_to_dict(rows[0], json_fields=("metadata",)) if rows else None


def insert_certificate_if_absent(
    user_id: str,
    course_id: str,
    *,
    issued_at: datetime,
    verification_token: str,
    certificate_number: str,
    certificate_url: str,
    completion_rate: int = 100,
    metadata: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Store a certificate unless a complete one already exists for the pair.

    The conflict branch only fills rows that are missing their token or
    document, so the first complete writer wins and every caller reads back
    the same stored token.
    """
    _exec(
        f"""
        INSERT INTO certificates({_CERTIFICATE_COLUMNS}) VALUES (?,?,?,?,?,?,?,?)
        ON CONFLICT(user_id, course_id) DO UPDATE SET
          issued_at=excluded.issued_at,
          verification_token=excluded.verification_token,
          certificate_number=excluded.certificate_number,
          certificate_url=excluded.certificate_url,
          completion_rate=excluded.completion_rate,
          metadata=excluded.metadata
        WHERE certificates.verification_token IS NULL OR certificates.certificate_url IS NULL
        """,
        (
            user_id,
            course_id,
            iso_timestamp(issued_at),
            verification_token,
            certificate_number,
            certificate_url,
            int(completion_rate),
            json_dumps(dict(metadata)) if metadata is not None else None,
        ),
    )
    return get_certificate(user_id, course_id) or {}


def list_certificates() -> list[Dict[str, Any]]:
    rows = _query(f"SELECT {_CERTIFICATE_COLUMNS} FROM certificates ORDER BY issued_at DESC")
    return [_row_to_dict(row, json_fields=("metadata",)) for row in rows]
