"""Staff-managed interventions for learners flagged by the risk engine."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Tuple

from engines.base import parse_datetime, utcnow
from engines.risk import RiskSignal
from errors import NotFound, ValidationError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from repositories import InterventionRepository

RISK_LEVELS = ("medium", "high")
INTERVENTION_STATUSES = ("open", "in_progress", "resolved", "dismissed")
ACTIVE_STATUSES = ("open", "in_progress")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class Intervention:
    id: int
    user_id: str
    risk_level: str
    risk_score: int
    reason: str
    status: str = "open"
    course_id: Optional[str] = None
    learning_path_id: Optional[str] = None
    assigned_to: Optional[str] = None
    action_plan: Optional[str] = None
    due_at: Optional[datetime] = None
    last_contacted_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value is not None else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "course_id": self.course_id,
            "learning_path_id": self.learning_path_id,
            "risk_level": self.risk_level,
            "risk_score": self.risk_score,
            "reason": self.reason,
            "assigned_to": self.assigned_to,
            "status": self.status,
            "action_plan": self.action_plan,
            "due_at": _iso(self.due_at),
            "last_contacted_at": _iso(self.last_contacted_at),
            "resolved_at": _iso(self.resolved_at),
            "metadata": dict(self.metadata),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class InterventionCandidate:
    signal: RiskSignal
    intervention: Optional[Intervention] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = self.signal.to_dict()
        payload["intervention"] = self.intervention.to_dict() if self.intervention else None
        return payload


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class InterventionSystem:
    """Creates and updates intervention cases and links them to risk signals."""

    def __init__(self, repository: "InterventionRepository"):
        self.repository = repository

    def save(
        self,
        payload: Mapping[str, Any],
        actor_id: str,
        now: Optional[datetime] = None,
    ) -> Intervention:
        """Create an intervention, or update the one named by ``payload['id']``."""
        fields = self._validate(payload)
        moment = now or utcnow()

        metadata = dict(payload.get("metadata") or {})
        metadata["updated_by"] = actor_id
        fields["metadata"] = metadata
        fields["resolved_at"] = moment if fields["status"] == "resolved" else None

        intervention_id = payload.get("id")
        if intervention_id is None:
            return self.repository.create_intervention(fields, now=moment)

        if isinstance(intervention_id, bool) or not isinstance(intervention_id, int):
            raise ValidationError("id must be an integer")
        existing = self.repository.get_intervention(intervention_id)
        if existing is None:
            raise NotFound(f"Unknown intervention: {intervention_id}")
        if existing.status == "resolved" and fields["status"] == "resolved" and existing.resolved_at:
            fields["resolved_at"] = existing.resolved_at
        updated = self.repository.update_intervention(existing.id, fields, now=moment)
        if updated is None:
            raise NotFound(f"Unknown intervention: {intervention_id}")
        return updated

    def list_interventions(self) -> List[Intervention]:
        return self.repository.list_interventions()

    @staticmethod
    def candidates(
        signals: Iterable[RiskSignal],
        interventions: Iterable[Intervention],
    ) -> List[InterventionCandidate]:
        """Pair each signal with the most recent active case for the same learner and course."""
        ordered = sorted(
            interventions,
            key=lambda item: (item.created_at or _EPOCH, item.id),
            reverse=True,
        )
        latest: Dict[Tuple[str, Optional[str]], Intervention] = {}
        for item in ordered:
            if not item.is_active:
                continue
            latest.setdefault((item.user_id, item.course_id), item)
        return [
            InterventionCandidate(signal=signal, intervention=latest.get((signal.user_id, signal.course_id)))
            for signal in signals
        ]

    # ----- validation ------------------------------------------------------
    def _validate(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        if not isinstance(payload, Mapping):
            raise ValidationError("Intervention payload must be an object")

        errors: List[str] = []
        user_id = _optional_text(payload.get("user_id"))
        if user_id is None:
            errors.append("user_id is required")

        risk_level = payload.get("risk_level")
        if risk_level not in RISK_LEVELS:
            errors.append(f"risk_level must be one of {', '.join(RISK_LEVELS)}")

        raw_score = payload.get("risk_score")
        risk_score = 0
        if isinstance(raw_score, bool) or not isinstance(raw_score, (int, float)) or not math.isfinite(raw_score):
            errors.append("risk_score must be a number")
        else:
            risk_score = max(0, min(100, int(math.floor(raw_score + 0.5))))

        reason = _optional_text(payload.get("reason"))
        if reason is None:
            errors.append("reason is required")

        status = payload.get("status") or "open"
        if status not in INTERVENTION_STATUSES:
            errors.append(f"status must be one of {', '.join(INTERVENTION_STATUSES)}")

        dates: Dict[str, Optional[datetime]] = {}
        for name in ("due_at", "last_contacted_at"):
            raw = payload.get(name)
            parsed = parse_datetime(raw)
            if raw not in (None, "") and parsed is None:
                errors.append(f"{name} must be an ISO-8601 timestamp")
            dates[name] = parsed

        metadata = payload.get("metadata")
        if metadata is not None and not isinstance(metadata, Mapping):
            errors.append("metadata must be an object")

        if errors:
            raise ValidationError("; ".join(errors), details={"errors": errors})

        return {
            "user_id": user_id,
            "course_id": _optional_text(payload.get("course_id")),
            "learning_path_id": _optional_text(payload.get("learning_path_id")),
            "risk_level": risk_level,
            "risk_score": risk_score,
            "reason": reason,
            "assigned_to": _optional_text(payload.get("assigned_to")),
            "status": status,
            "action_plan": _optional_text(payload.get("action_plan")),
            "due_at": dates["due_at"],
            "last_contacted_at": dates["last_contacted_at"],
        }
