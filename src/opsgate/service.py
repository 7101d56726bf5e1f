from __future__ import annotations

"""Service facade wiring the queue, approval stores, audit log and orchestrator together."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .approvals import ApprovalStore
from .audit import AuditLog
from .capabilities.registry import CapabilityRegistry, default_registry
from .grants import GrantStore, normalize_requester
from .notify import Notifier, OutboxNotifier
from .paths import ensure_home_dirs, opsgate_home, policy_path
from .policy import PolicyConfig, load_policy
from .queue import CommandQueue
from .results import OpsGateError
from .security import hash_token
from .worker import Orchestrator


VERSION = "0.1"


@dataclass
class OpsGateService:
    """Local engine state rooted at one home directory."""

    home: Path
    dirs: dict[str, Path]
    policy_file: Path
    queue: CommandQueue
    approvals: ApprovalStore
    grants: GrantStore
    audit: AuditLog
    registry: CapabilityRegistry
    notifier: Notifier

    @classmethod
    def create(cls, home: Path | None = None, *, notifier: Notifier | None = None) -> "OpsGateService":
        base = home or opsgate_home()
        dirs = ensure_home_dirs(base)
        return cls(
            home=base,
            dirs=dirs,
            policy_file=policy_path(base),
            queue=CommandQueue(
                outbox=dirs["outbox"],
                processing=dirs["processing"],
                completed=dirs["completed"],
                results_path=dirs["queue"] / "results.jsonl",
            ),
            approvals=ApprovalStore(
                dirs["pending"],
                dirs["consumed"],
                mirror_path=dirs["approvals"] / "pending_approvals.json",
            ),
            grants=GrantStore(dirs["grants"]),
            audit=AuditLog(dirs["audit"]),
            registry=default_registry(dirs["state"]),
            notifier=notifier or OutboxNotifier(dirs["notifications"] / "outbox.jsonl"),
        )

    def load_policy(self) -> PolicyConfig:
        return load_policy(self.policy_file)

    def orchestrator(self) -> Orchestrator:
        return Orchestrator(
            queue=self.queue,
            approvals=self.approvals,
            grants=self.grants,
            registry=self.registry,
            audit=self.audit,
            notifier=self.notifier,
            policy_loader=self.load_policy,
        )

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "version": VERSION,
            "capabilities": self.registry.names(),
            "queue_pending": self.queue.pending_count(),
        }

    def enqueue(
        self,
        *,
        capability: str | None,
        action: str | None,
        requested_by: str,
        payload: dict[str, Any] | None = None,
        command_kind: str = "capability",
        phase: str = "plan",
        context: dict[str, Any] | None = None,
        actor_bot_id: str | None = None,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        return self.queue.enqueue(
            command_kind=command_kind,
            phase=phase,
            capability=capability,
            action=action,
            requested_by=requested_by,
            payload=payload,
            context=context,
            actor_bot_id=actor_bot_id,
            request_id=request_id,
        )

    def run_worker(self, max_items: int | None = None) -> dict[str, Any]:
        return self.orchestrator().run(max_items=max_items)

    def _decide(
        self,
        token_id: str,
        *,
        requested_by: str,
        decision: str,
        approval_flags: list[str] | None,
        actor_bot_id: str | None,
        context: dict[str, Any] | None,
        reason: str | None,
        run_now: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"token": token_id, "decision": decision}
        if approval_flags:
            payload["approval_flags"] = list(approval_flags)
        if reason:
            payload["reason"] = reason
        envelope = self.enqueue(
            capability=None,
            action=None,
            command_kind="approval",
            phase="execute",
            requested_by=requested_by,
            payload=payload,
            context=context,
            actor_bot_id=actor_bot_id,
        )
        if not run_now:
            return {"request_id": envelope["request_id"], "queued": True}
        self.run_worker()
        return self.result_for(envelope["request_id"])

    def approve(
        self,
        token_id: str,
        *,
        requested_by: str,
        approval_flags: list[str] | None = None,
        actor_bot_id: str | None = None,
        context: dict[str, Any] | None = None,
        run_now: bool = True,
    ) -> dict[str, Any]:
        return self._decide(
            token_id,
            requested_by=requested_by,
            decision="approve",
            approval_flags=approval_flags,
            actor_bot_id=actor_bot_id,
            context=context,
            reason=None,
            run_now=run_now,
        )

    def deny(
        self,
        token_id: str,
        *,
        requested_by: str,
        actor_bot_id: str | None = None,
        context: dict[str, Any] | None = None,
        reason: str | None = None,
        run_now: bool = True,
    ) -> dict[str, Any]:
        return self._decide(
            token_id,
            requested_by=requested_by,
            decision="deny",
            approval_flags=None,
            actor_bot_id=actor_bot_id,
            context=context,
            reason=reason,
            run_now=run_now,
        )

    def result_for(self, request_id: str) -> dict[str, Any]:
        rows = self.queue.read_results(request_id)
        if not rows:
            raise OpsGateError("RESULT_NOT_FOUND", "no result recorded for request.", request_id=request_id)
        return rows[-1]

    def list_pending_approvals(self) -> list[dict[str, Any]]:
        return [
            {
                "token_id": row.get("token_id"),
                "token_hash": hash_token(str(row.get("token_id"))),
                "action_type": row.get("action_type"),
                "risk_level": row.get("risk_level"),
                "requester": row.get("requester"),
                "required_flags": row.get("required_flags", []),
                "created_at": row.get("created_at"),
                "expires_at": row.get("expires_at"),
                "plan_summary": (row.get("plan") or {}).get("plan_summary"),
            }
            for row in self.approvals.list_pending()
        ]

    def gc_approvals(self) -> dict[str, Any]:
        expired = self.approvals.expire_sweep()
        return {"expired": len(expired), "pending": len(self.approvals.list_pending())}

    def show_grant(self, requester: str) -> dict[str, Any]:
        requested_by = normalize_requester(requester)
        checked = self.grants.validate_grant(requested_by)
        if not checked.ok:
            return {"requested_by": requested_by, "active": False, "error_code": checked.error.code}  # type: ignore[union-attr]
        return {"requested_by": requested_by, "active": True, "record": checked.value["record"]}  # type: ignore[index]

    def create_grant(self, requester: str, *, scope: str | None = None, ttl_seconds: int | None = None) -> dict[str, Any]:
        policy = self.load_policy()
        created = self.grants.create_grant(requester, policy, scope=scope, ttl_seconds=ttl_seconds, granted_by="operator")
        record = created.unwrap()
        self.audit.log_event(
            "approval_grant_created",
            requester=record["requested_by"],
            decision="granted",
            payload={
                "grant_id": record["grant_id"],
                "scope": record["scope"],
                "expires_at": record["expires_at"],
                "replaces_grant_id": record["replaces_grant_id"],
                "source": "operator",
            },
        )
        return record

    def revoke_grant(self, requester: str) -> dict[str, Any]:
        requested_by = normalize_requester(requester)
        return {"requested_by": requested_by, "revoked": self.grants.revoke_grant(requested_by)}

    def audit_summary(self, range_value: str = "7d", requester: str | None = None) -> dict[str, Any]:
        try:
            return self.audit.export_summary(range_value=range_value, requester=requester)
        except ValueError as exc:
            raise OpsGateError("INVALID_RANGE", str(exc), hint="use a window like 7d or 24h") from exc

    def policy_show(self) -> dict[str, Any]:
        return self.load_policy().to_dict()
