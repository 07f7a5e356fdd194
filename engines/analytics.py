"""Course analytics summaries for staff dashboards."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List, Sequence

from engines.base import round_percent
from engines.records import CourseModule, ModuleProgress, QuizAttempt

DEFAULT_DROPOFF_LIMIT = 12


def _is_quiz_module(module: CourseModule) -> bool:
    return module.module_type == "quiz" or module.quiz_payload is not None


def _mean(total: float, count: int) -> int:
    if count <= 0:
        return 0
    return int(total / count + 0.5)


def quiz_performance(modules: Sequence[CourseModule], attempts: Sequence[QuizAttempt]) -> List[Dict[str, Any]]:
    """Attempts, pass rate and average score per quiz module; busiest first."""
    by_module: Dict[str, List[QuizAttempt]] = defaultdict(list)
    for attempt in attempts:
        by_module[attempt.module_id].append(attempt)

    rows: List[Dict[str, Any]] = []
    for module in modules:
        if not _is_quiz_module(module):
            continue
        module_attempts = by_module.get(module.id, [])
        passed = sum(1 for attempt in module_attempts if attempt.passed)
        rows.append(
            {
                "module_id": module.id,
                "course_id": module.course_id,
                "title": module.title,
                "attempts": len(module_attempts),
                "pass_rate": round_percent(passed, len(module_attempts)),
                "avg_score": _mean(sum(attempt.score_percent for attempt in module_attempts), len(module_attempts)),
            }
        )
    rows.sort(key=lambda row: (-row["attempts"], -row["pass_rate"], row["title"], row["module_id"]))
    return rows


def module_dropoff(
    modules: Sequence[CourseModule],
    progress_rows: Sequence[ModuleProgress],
    limit: int = DEFAULT_DROPOFF_LIMIT,
) -> List[Dict[str, Any]]:
    """Started modules with the lowest completion rate first."""
    by_module: Dict[str, List[ModuleProgress]] = defaultdict(list)
    for row in progress_rows:
        by_module[row.module_id].append(row)

    rows: List[Dict[str, Any]] = []
    for module in modules:
        module_rows = by_module.get(module.id)
        if not module_rows:
            continue
        learners = {row.user_id for row in module_rows}
        completed = {row.user_id for row in module_rows if row.completed}
        rows.append(
            {
                "module_id": module.id,
                "course_id": module.course_id,
                "title": module.title,
                "started": len(learners),
                "completed": len(completed),
                "completion_rate": round_percent(len(completed), len(learners)),
                "avg_watch_seconds": _mean(sum(row.watch_time_seconds for row in module_rows), len(module_rows)),
            }
        )
    rows.sort(key=lambda row: (row["completion_rate"], -row["started"], row["title"], row["module_id"]))
    return rows[: max(0, limit)]
