from __future__ import annotations

"""Standing approval grants: one short-lived record per requester."""

import secrets
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from .policy import PolicyConfig, clamp_ttl
from .results import Result
from .security import sha256_hex
from .store import JsonFileStore


GRANT_SCHEMA_VERSION = "0.1"
SCOPE_ALL = "all"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


def normalize_requester(value: Any) -> str:
    text = str(value or "").strip()
    return text or "unknown"


def normalize_scope(value: Any) -> str:
    return str(value or "").strip().lower() or SCOPE_ALL


class GrantStore:
    def __init__(self, grants_dir: Path) -> None:
        self.store = JsonFileStore(grants_dir)

    @staticmethod
    def key_for(requester: str) -> str:
        return sha256_hex(requester)

    def read_grant(self, requester: str) -> dict[str, Any] | None:
        return self.store.read(self.key_for(normalize_requester(requester)))

    def revoke_grant(self, requester: str) -> bool:
        return self.store.delete(self.key_for(normalize_requester(requester)))

    def create_grant(
        self,
        requester: str,
        policy: PolicyConfig,
        *,
        scope: str | None = None,
        ttl_seconds: int | None = None,
        source_token: str | None = None,
        source_request_id: str | None = None,
        granted_by: str | None = None,
    ) -> Result[dict[str, Any]]:
        """Issue a grant; an active prior grant is replaced with a fresh id and TTL."""

        requested_by = normalize_requester(requester)
        if requested_by == "unknown":
            return Result.failure("REQUESTER_REQUIRED", "approval grant requester is required.")
        ttl = clamp_ttl(ttl_seconds if ttl_seconds is not None else policy.grant.ttl.default_seconds, policy.grant.ttl)
        previous = self.validate_grant(requested_by)
        now = _utc_now()
        record = {
            "schema_version": GRANT_SCHEMA_VERSION,
            "grant_id": f"grt_{secrets.token_hex(8)}",
            "requested_by": requested_by,
            "scope": normalize_scope(scope or policy.grant.scope),
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=ttl)).isoformat(),
            "ttl_seconds": ttl,
            "source_token": source_token or None,
            "source_request_id": source_request_id or None,
            "granted_by": granted_by or requested_by,
            "replaces_grant_id": previous.value["record"]["grant_id"] if previous.ok else None,  # type: ignore[index]
        }
        self.store.write(self.key_for(requested_by), record)
        return Result.success(record)

    def validate_grant(self, requester: str, scope: str | None = None) -> Result[dict[str, Any]]:
        requested_by = normalize_requester(requester)
        if requested_by == "unknown":
            return Result.failure("REQUESTER_REQUIRED", "approval grant requester is required.")
        record = self.read_grant(requested_by)
        if record is None:
            return Result.failure("GRANT_NOT_FOUND", "approval grant was not found.", requested_by=requested_by)
        expires_at = _parse_ts(record.get("expires_at"))
        if expires_at is None or expires_at <= _utc_now():
            self.revoke_grant(requested_by)
            return Result.failure(
                "GRANT_EXPIRED",
                "approval grant expired.",
                requested_by=requested_by,
                expires_at=record.get("expires_at"),
            )
        wanted = str(scope or "").strip().lower()
        granted = normalize_scope(record.get("scope"))
        if wanted and granted != SCOPE_ALL and granted != wanted:
            return Result.failure(
                "GRANT_SCOPE_MISMATCH",
                "approval grant scope does not cover request.",
                requested_by=requested_by,
                granted_scope=granted,
                requested_scope=wanted,
            )
        return Result.success({"requested_by": requested_by, "record": record})

    def has_active_grant(self, requester: str, policy: PolicyConfig, scope: str | None = None) -> dict[str, Any]:
        """Non-raising grant lookup; a disabled grant policy never reports an active grant."""

        requested_by = normalize_requester(requester)
        if not policy.grant.enabled:
            return {
                "active": False,
                "requested_by": requested_by,
                "record": None,
                "error_code": "GRANT_DISABLED",
                "error": "approval grants are disabled by policy.",
            }
        try:
            checked = self.validate_grant(requested_by, scope)
        except OSError as exc:
            return {
                "active": False,
                "requested_by": requested_by,
                "record": None,
                "error_code": "GRANT_INVALID",
                "error": str(exc),
            }
        if not checked.ok:
            return {
                "active": False,
                "requested_by": requested_by,
                "record": None,
                "error_code": checked.error.code,  # type: ignore[union-attr]
                "error": checked.error.message,  # type: ignore[union-attr]
            }
        return {
            "active": True,
            "requested_by": requested_by,
            "record": checked.value["record"],  # type: ignore[index]
            "error_code": None,
            "error": None,
        }
