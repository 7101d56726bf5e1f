from __future__ import annotations

"""Plan value type and the stable content hash that binds approvals to it."""

import hashlib
import json
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import UTC, datetime
from typing import Any

from .policy import normalize_flags


PLAN_SCHEMA_VERSION = "0.1"
HASHED_FIELDS = (
    "intent_action",
    "requested_by",
    "payload",
    "source_candidates",
    "target_path",
    "risk_tier",
    "mutating",
    "required_flags",
    "exact_paths",
    "operations",
    "rollback_instructions",
)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def stable_json(value: Any) -> str:
    """Serialize with sorted keys so equivalent structures always encode identically."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def blocker(code: str, message: str, **context: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"code": code, "message": message}
    for key, value in context.items():
        if value is not None:
            payload[key] = value
    return payload


@dataclass(frozen=True)
class Plan:
    """Reviewable description of one proposed operation.

    Plans are never mutated; use `dataclasses.replace` (or `with_grant`) to
    derive a variant.
    """

    capability: str
    action: str
    requested_by: str
    payload: dict[str, Any] = field(default_factory=dict)
    intent_action: str = ""
    command_kind: str = "capability"
    source_candidates: tuple[str, ...] = ()
    target_path: str | None = None
    risk_tier: str = "MEDIUM"
    mutating: bool = False
    requires_approval: bool = False
    required_flags: tuple[str, ...] = ()
    exact_paths: tuple[str, ...] = ()
    operations: tuple[dict[str, Any], ...] = ()
    rollback_instructions: tuple[str, ...] = ()
    blockers: tuple[dict[str, Any], ...] = ()
    warnings: tuple[str, ...] = ()
    plan_summary: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    approval_grant: dict[str, Any] | None = None
    created_at: str = field(default_factory=_now_iso)

    @property
    def action_type(self) -> str:
        return f"{self.capability}:{self.action}"

    @property
    def blocked(self) -> bool:
        return bool(self.blockers)

    def with_grant(self, grant: dict[str, Any]) -> "Plan":
        return replace(self, required_flags=(), requires_approval=False, approval_grant=grant)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, tuple):
                payload[key] = list(value)
        payload["schema_version"] = PLAN_SCHEMA_VERSION
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                continue
            if isinstance(value, list):
                value = tuple(value)
            kwargs[key] = value
        return cls(**kwargs)


def plan_hash_projection(plan: Plan) -> dict[str, Any]:
    """Security-relevant subset of a plan; incidental fields never affect the hash."""

    projection: dict[str, Any] = {}
    for name in HASHED_FIELDS:
        value = getattr(plan, name)
        if name == "intent_action":
            value = value or plan.action_type
        if name == "required_flags":
            value = normalize_flags(value)
        if isinstance(value, tuple):
            value = list(value)
        projection[name] = value
    return projection


def compute_plan_hash(plan: Plan) -> str:
    return hashlib.sha256(stable_json(plan_hash_projection(plan)).encode("utf-8")).hexdigest()
