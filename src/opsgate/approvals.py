from __future__ import annotations

"""Approval tokens: a pending -> consumed | denied | expired state machine on disk."""

import re
import secrets
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

from .plans import Plan, compute_plan_hash
from .policy import ANY_USER_ANY_BOT, STRICT_USER_BOT, PolicyConfig, clamp_ttl, normalize_flags, normalize_identity_mode
from .results import Result
from .store import JsonFileStore, save_json


TOKEN_SCHEMA_VERSION = "0.1"
TOKEN_ID_PATTERN = re.compile(r"^apv_[0-9a-f]{16}$")
PENDING = "pending"
CONSUMED = "consumed"
DENIED = "denied"
EXPIRED = "expired"
TERMINAL_STATUSES = {CONSUMED, DENIED, EXPIRED}
TERMINAL_ERROR_CODES = {CONSUMED: "TOKEN_CONSUMED", DENIED: "TOKEN_DENIED", EXPIRED: "TOKEN_EXPIRED"}


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


def new_token_id() -> str:
    return f"apv_{secrets.token_hex(8)}"


def _stale_terminal_status(record: dict[str, Any]) -> str | None:
    if record.get("consumed_at"):
        return CONSUMED
    if record.get("denied_at"):
        return DENIED
    if record.get("expired_at"):
        return EXPIRED
    status = record.get("status")
    if status in TERMINAL_STATUSES:
        return str(status)
    return None


class ApprovalStore:
    """File-backed approval tokens.

    Every public method first runs the expiry sweep, so no scheduler is needed.
    Pending records live in `pending/`, terminal ones in `consumed/` with their
    final `status`. A transition is a rename out of `pending/`; whoever loses
    the rename race reports the token's terminal state instead.
    """

    def __init__(self, pending_dir: Path, terminal_dir: Path, mirror_path: Path | None = None) -> None:
        self.pending = JsonFileStore(pending_dir)
        self.terminal = JsonFileStore(terminal_dir)
        self.mirror_path = mirror_path

    def expire_sweep(self, now: datetime | None = None) -> list[str]:
        """Move past-due and stale-status pending records to the terminal store."""

        current = now or _utc_now()
        moved: list[str] = []
        for token_id in self.pending.keys():
            record = self.pending.read(token_id)
            if record is None:
                continue
            stale = _stale_terminal_status(record)
            if stale is not None:
                if self.pending.transition(token_id, self.terminal, lambda r, s=stale: {**r, "status": s}):
                    moved.append(token_id)
                continue
            expires_at = _parse_ts(record.get("expires_at"))
            if expires_at is None or expires_at <= current:
                if self._expire(token_id, current) is not None:
                    moved.append(token_id)
        if moved:
            self.sync_pending_mirror()
        return moved

    def _expire(self, token_id: str, now: datetime) -> dict[str, Any] | None:
        def _mark(record: dict[str, Any]) -> dict[str, Any]:
            record["status"] = EXPIRED
            record["expired_at"] = now.isoformat()
            return record

        return self.pending.transition(token_id, self.terminal, _mark)

    def create_token(
        self,
        plan: Plan,
        policy: PolicyConfig,
        *,
        requester: str,
        actor_bot_id: str = "",
        request_id: str | None = None,
        ttl_seconds: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        self.expire_sweep()
        now = _utc_now()
        ttl = clamp_ttl(ttl_seconds if ttl_seconds is not None else policy.token_ttl.default_seconds, policy.token_ttl)
        token_id = new_token_id()
        while self.pending.exists(token_id) or self.terminal.exists(token_id):
            token_id = new_token_id()
        record = {
            "schema_version": TOKEN_SCHEMA_VERSION,
            "token_id": token_id,
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=ttl)).isoformat(),
            "ttl_seconds": ttl,
            "requester": requester,
            "actor_bot_id": actor_bot_id or "",
            "action_type": plan.action_type,
            "risk_level": plan.risk_tier,
            "required_flags": normalize_flags(plan.required_flags),
            "plan": plan.to_dict(),
            "plan_hash": compute_plan_hash(plan),
            "request_id": request_id,
            "identity_context": dict(context or {}),
            "status": PENDING,
        }
        self.pending.write(token_id, record)
        self.sync_pending_mirror()
        return record

    def read_any(self, token_id: str) -> dict[str, Any] | None:
        return self.pending.read(token_id) or self.terminal.read(token_id)

    def _terminal_failure(self, token_id: str) -> Result[dict[str, Any]]:
        record = self.terminal.read(token_id)
        if record is None:
            return Result.failure("TOKEN_NOT_FOUND", "approval token not found.", token_id=token_id)
        status = str(record.get("status") or "")
        code = TERMINAL_ERROR_CODES.get(status, "TOKEN_CONSUMED")
        return Result.failure(code, f"approval token is {status or 'no longer pending'}.", token_id=token_id)

    def _load_pending(self, token_id: str) -> Result[dict[str, Any]]:
        if not TOKEN_ID_PATTERN.match(token_id or ""):
            return Result.failure("TOKEN_NOT_FOUND", "approval token id is malformed.", token_id=token_id)
        self.expire_sweep()
        record = self.pending.read(token_id)
        if record is None:
            return self._terminal_failure(token_id)
        stale = _stale_terminal_status(record)
        if stale is not None:
            return Result.failure(TERMINAL_ERROR_CODES[stale], f"approval token is {stale}.", token_id=token_id)
        expires_at = _parse_ts(record.get("expires_at"))
        if expires_at is None or expires_at <= _utc_now():
            self._expire(token_id, _utc_now())
            self.sync_pending_mirror()
            return Result.failure("TOKEN_EXPIRED", "approval token expired.", token_id=token_id)
        return Result.success(record)

    def validate(
        self,
        token_id: str,
        *,
        requester: str,
        actor_bot_id: str = "",
        provided_flags: Iterable[Any] | None = None,
        identity_mode: str = STRICT_USER_BOT,
    ) -> Result[dict[str, Any]]:
        """Read-only check of identity binding and approval flags against a pending token."""

        loaded = self._load_pending(token_id)
        if not loaded.ok:
            return loaded
        record: dict[str, Any] = loaded.value  # type: ignore[assignment]
        mode = normalize_identity_mode(identity_mode)
        if mode != ANY_USER_ANY_BOT and str(record.get("requester") or "") != str(requester or ""):
            return Result.failure(
                "REQUESTER_MISMATCH",
                "requester does not match the approval token owner.",
                token_id=token_id,
                identity_mode=mode,
            )
        if mode == STRICT_USER_BOT and str(record.get("actor_bot_id") or "") != str(actor_bot_id or ""):
            return Result.failure(
                "BOT_MISMATCH",
                "acting bot does not match the bot that requested approval.",
                token_id=token_id,
                identity_mode=mode,
            )
        provided = set(normalize_flags(provided_flags))
        missing = [flag for flag in normalize_flags(record.get("required_flags", [])) if flag not in provided]
        if missing:
            return Result.failure(
                "APPROVAL_FLAGS_REQUIRED",
                "missing approval flags: " + ", ".join(f"--{flag}" for flag in missing),
                token_id=token_id,
                missing_flags=missing,
            )
        return Result.success(record)

    def consume(
        self,
        token_id: str,
        *,
        consumed_by: str,
        approved_by: str | None = None,
        execution_request_id: str | None = None,
    ) -> Result[dict[str, Any]]:
        loaded = self._load_pending(token_id)
        if not loaded.ok:
            return loaded
        now = _utc_now().isoformat()

        def _mark(record: dict[str, Any]) -> dict[str, Any]:
            record.update(
                {
                    "status": CONSUMED,
                    "consumed_at": now,
                    "consumed_by": consumed_by,
                    "approved_by": approved_by or consumed_by,
                    "execution_request_id": execution_request_id,
                }
            )
            return record

        updated = self.pending.transition(token_id, self.terminal, _mark)
        if updated is None:
            return self._terminal_failure(token_id)
        self.sync_pending_mirror()
        return Result.success(updated)

    def deny(self, token_id: str, *, denied_by: str, reason: str | None = None) -> Result[dict[str, Any]]:
        loaded = self._load_pending(token_id)
        if not loaded.ok:
            return loaded
        now = _utc_now().isoformat()

        def _mark(record: dict[str, Any]) -> dict[str, Any]:
            record.update({"status": DENIED, "denied_at": now, "denied_by": denied_by, "deny_reason": reason})
            return record

        updated = self.pending.transition(token_id, self.terminal, _mark)
        if updated is None:
            return self._terminal_failure(token_id)
        self.sync_pending_mirror()
        return Result.success(updated)

    def list_pending(self) -> list[dict[str, Any]]:
        self.expire_sweep()
        rows: list[dict[str, Any]] = []
        for token_id in self.pending.keys():
            record = self.pending.read(token_id)
            if record is not None:
                rows.append(record)
        rows.sort(key=lambda row: str(row.get("created_at", "")))
        return rows

    def sync_pending_mirror(self) -> None:
        """Rewrite the compact pending-approvals view used by chat front-ends."""

        if self.mirror_path is None:
            return
        pending = []
        for token_id in self.pending.keys():
            record = self.pending.read(token_id)
            if record is None:
                continue
            pending.append(
                {
                    "id": token_id,
                    "action_type": record.get("action_type"),
                    "risk_level": record.get("risk_level"),
                    "requester": record.get("requester"),
                    "required_flags": record.get("required_flags", []),
                    "expires_at": record.get("expires_at"),
                    "status": record.get("status", PENDING),
                }
            )
        save_json(self.mirror_path, {"updated_at": _utc_now().isoformat(), "pending": pending})
