from __future__ import annotations

"""Queue orchestrator: plan, gate, execute and report one envelope at a time."""

from typing import Any, Callable

from .approvals import ApprovalStore
from .audit import AuditLog
from .capabilities.base import Capability
from .capabilities.registry import CapabilityRegistry
from .grants import GrantStore, normalize_requester
from .notify import Notifier, format_execute_reply, format_failure_reply, format_plan_reply
from .plans import Plan, compute_plan_hash
from .policy import PolicyConfig, check_identity_guard, normalize_flags
from .queue import Claim, CommandQueue
from .results import Failure


MAX_ERROR_CHARS = 300
PLAN_KINDS = {"capability", "file"}


class RequestFailed(Exception):
    """Ends the current request with a structured failure row."""

    def __init__(self, code: str, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.extra = extra

    @classmethod
    def from_failure(cls, failure: Failure) -> "RequestFailed":
        return cls(failure.code, failure.message, **failure.context)


def resolve_requester(envelope: dict[str, Any]) -> str:
    context = envelope.get("context") or {}
    user_id = str(context.get("user_id") or "").strip() if isinstance(context, dict) else ""
    return normalize_requester(user_id or envelope.get("requested_by"))


def resolve_bot_id(envelope: dict[str, Any]) -> str:
    context = envelope.get("context") or {}
    bot_id = envelope.get("actor_bot_id") or (context.get("bot_id") if isinstance(context, dict) else None)
    return str(bot_id or "").strip()


class Orchestrator:
    """Drains the command queue.

    Plan requests build a plan, log the gating decision, and either execute
    inline (read-only, auto-approved or grant-covered plans) or mint an
    approval token. Execute requests carry a token (or a deny decision); the
    plan is rebuilt from the token's stored inputs and its hash compared
    before anything is consumed or mutated.
    """

    def __init__(
        self,
        *,
        queue: CommandQueue,
        approvals: ApprovalStore,
        grants: GrantStore,
        registry: CapabilityRegistry,
        audit: AuditLog,
        notifier: Notifier,
        policy_loader: Callable[[], PolicyConfig],
    ) -> None:
        self.queue = queue
        self.approvals = approvals
        self.grants = grants
        self.registry = registry
        self.audit = audit
        self.notifier = notifier
        self.policy_loader = policy_loader

    def run(self, max_items: int | None = None) -> dict[str, Any]:
        processed = 0
        ok = 0
        failed = 0
        results: list[dict[str, Any]] = []
        while max_items is None or processed < max_items:
            claim = self.queue.claim_next()
            if claim is None:
                break
            row = self.queue.complete(claim, self.handle(claim))
            processed += 1
            if row.get("ok"):
                ok += 1
            else:
                failed += 1
            results.append(row)
        return {"processed": processed, "ok": ok, "failed": failed, "results": results}

    def handle(self, claim: Claim) -> dict[str, Any]:
        envelope = claim.envelope
        request_id = claim.request_id
        requester = resolve_requester(envelope)
        phase = str(envelope.get("phase") or "")
        base = {"request_id": request_id, "phase": phase, "requested_by": requester}
        try:
            policy = self.policy_loader()
            kind = str(envelope.get("command_kind") or "capability")
            if phase == "plan" and kind in PLAN_KINDS:
                return {**base, **self._plan_phase(envelope, requester, policy)}
            if phase == "execute":
                return {**base, **self._execute_phase(envelope, requester, policy)}
            raise RequestFailed("UNSUPPORTED_ACTION", f"unsupported command '{kind}' in phase '{phase}'.")
        except RequestFailed as exc:
            return {**base, **self._fail(envelope, requester, exc.code, exc.message, **exc.extra)}
        except Exception as exc:  # noqa: BLE001
            message = f"{exc.__class__.__name__}: {exc}"[:MAX_ERROR_CHARS]
            return {**base, **self._fail(envelope, requester, "INTERNAL_ERROR", message)}

    def _fail(self, envelope: dict[str, Any], requester: str, code: str, message: str, **extra: Any) -> dict[str, Any]:
        request_id = envelope.get("request_id")
        self.audit.log_event(
            "request_failed",
            requester=requester,
            bot_id=resolve_bot_id(envelope),
            token=(envelope.get("payload") or {}).get("token"),
            request_id=request_id,
            decision="failed",
            payload={"error_code": code, "error": message, "phase": envelope.get("phase")},
        )
        self._notify(envelope, requester, format_failure_reply(request_id, code, message))
        row: dict[str, Any] = {"token_id": None, "plan_summary": None, "executed_steps": [], **extra}
        row.update({"ok": False, "error_code": code, "error": message})
        return row

    def _notify(self, envelope: dict[str, Any], requester: str, text: str) -> None:
        self.notifier.notify(
            text,
            request_id=envelope.get("request_id"),
            requested_by=requester,
            context=envelope.get("context") or {},
        )

    def _capability(self, name: str | None) -> Capability:
        resolved = self.registry.resolve(name)
        if not resolved.ok:
            raise RequestFailed.from_failure(resolved.error)  # type: ignore[arg-type]
        return resolved.value  # type: ignore[return-value]

    def _plan_phase(self, envelope: dict[str, Any], requester: str, policy: PolicyConfig) -> dict[str, Any]:
        context = envelope.get("context") or {}
        guard = check_identity_guard(policy, context)
        if guard is not None:
            raise RequestFailed.from_failure(guard)
        capability_name = "file" if envelope.get("command_kind") == "file" else envelope.get("capability")
        capability = self._capability(capability_name)
        built = capability.plan(str(envelope.get("action") or ""), envelope.get("payload") or {}, requester, context, policy)
        if not built.ok:
            raise RequestFailed.from_failure(built.error)  # type: ignore[arg-type]
        plan: Plan = built.value  # type: ignore[assignment]
        bot_id = resolve_bot_id(envelope)
        request_id = envelope.get("request_id")

        grant_state: dict[str, Any] = {"active": False}
        if plan.requires_approval:
            grant_state = self.grants.has_active_grant(requester, policy, scope=plan.action_type)
            if grant_state["active"]:
                plan = plan.with_grant(grant_state["record"])
        decision = "approval_required" if plan.requires_approval else "auto_execute"
        self.audit.log_event(
            "auto_execute_decision",
            requester=requester,
            bot_id=bot_id,
            action_type=plan.action_type,
            risk_level=plan.risk_tier,
            decision=decision,
            request_id=request_id,
            payload={
                "mutating": plan.mutating,
                "required_flags": list(plan.required_flags),
                "blockers": [item.get("code") for item in plan.blockers],
                "grant_bypass": bool(grant_state["active"]),
            },
        )
        summary = {
            "action_type": plan.action_type,
            "risk_tier": plan.risk_tier,
            "mutating": plan.mutating,
            "requires_approval": plan.requires_approval,
            "required_flags": list(plan.required_flags),
            "blockers": list(plan.blockers),
            "warnings": list(plan.warnings),
            "plan_hash": compute_plan_hash(plan),
            "plan_summary": plan.plan_summary,
        }

        if plan.requires_approval:
            token = self.approvals.create_token(
                plan,
                policy,
                requester=requester,
                actor_bot_id=bot_id,
                request_id=request_id,
                ttl_seconds=(envelope.get("payload") or {}).get("ttl_seconds"),
                context=context,
            )
            self.audit.log_event(
                "approval_request_created",
                requester=requester,
                bot_id=bot_id,
                token=token["token_id"],
                action_type=plan.action_type,
                risk_level=plan.risk_tier,
                decision="pending",
                request_id=request_id,
                payload={"expires_at": token["expires_at"], "required_flags": token["required_flags"]},
            )
            self._notify(envelope, requester, format_plan_reply(plan, token))
            return {
                **summary,
                "ok": True,
                "token_id": token["token_id"],
                "expires_at": token["expires_at"],
                "executed_steps": [],
                "plan": plan.to_dict(),
            }

        if grant_state["active"]:
            self.audit.log_event(
                "approval_grant_bypass",
                requester=requester,
                bot_id=bot_id,
                action_type=plan.action_type,
                risk_level=plan.risk_tier,
                decision="grant_bypass",
                request_id=request_id,
                payload={"grant_id": grant_state["record"].get("grant_id"), "scope": grant_state["record"].get("scope")},
            )
        self._notify(envelope, requester, format_plan_reply(plan))
        result = capability.execute(plan, policy)
        if plan.approval_grant:
            result["approval_grant"] = plan.approval_grant
        return {**summary, **self._report(envelope, requester, bot_id, plan, result), "token_id": None}

    def _report(
        self,
        envelope: dict[str, Any],
        requester: str,
        bot_id: str,
        plan: Plan,
        result: dict[str, Any],
        *,
        token: str | None = None,
    ) -> dict[str, Any]:
        ok = bool(result.get("ok"))
        self.audit.log_event(
            "execution_result",
            requester=requester,
            bot_id=bot_id,
            token=token,
            action_type=plan.action_type,
            risk_level=plan.risk_tier,
            decision="ok" if ok else "failed",
            request_id=envelope.get("request_id"),
            payload={
                "error_code": result.get("error_code"),
                "error": result.get("error"),
                "executed_steps": len(result.get("executed_steps") or []),
            },
        )
        self._notify(envelope, requester, format_execute_reply(plan.action_type, result))
        return {**result, "ok": ok, "action_type": plan.action_type, "plan_summary": plan.plan_summary}

    def _execute_phase(self, envelope: dict[str, Any], requester: str, policy: PolicyConfig) -> dict[str, Any]:
        payload = envelope.get("payload") or {}
        token_id = str(payload.get("token") or payload.get("token_id") or "").strip()
        if not token_id:
            raise RequestFailed("TOKEN_REQUIRED", "execute requires an approval token.")
        guard = check_identity_guard(policy, envelope.get("context") or {})
        if guard is not None:
            raise RequestFailed.from_failure(guard)
        bot_id = resolve_bot_id(envelope)
        request_id = envelope.get("request_id")
        decision = str(payload.get("decision") or "approve").strip().lower()

        if decision == "deny":
            return self._deny(envelope, requester, bot_id, token_id, policy)

        checked = self.approvals.validate(
            token_id,
            requester=requester,
            actor_bot_id=bot_id,
            provided_flags=payload.get("approval_flags"),
            identity_mode=policy.identity_mode,
        )
        if not checked.ok:
            raise RequestFailed.from_failure(checked.error)  # type: ignore[arg-type]
        record: dict[str, Any] = checked.value  # type: ignore[assignment]
        stored = Plan.from_dict(record.get("plan") or {})
        capability = self._capability(stored.capability)

        rebuilt = capability.plan(
            stored.action,
            dict(stored.payload),
            stored.requested_by,
            record.get("identity_context") or {},
            policy,
        )
        current_hash = compute_plan_hash(rebuilt.value) if rebuilt.ok else None  # type: ignore[arg-type]
        if current_hash != record.get("plan_hash"):
            self.audit.log_event(
                "plan_drift_detected",
                requester=requester,
                bot_id=bot_id,
                token=token_id,
                action_type=stored.action_type,
                risk_level=stored.risk_tier,
                decision="rejected",
                request_id=request_id,
                payload={
                    "expected_hash": record.get("plan_hash"),
                    "actual_hash": current_hash,
                    "replan_error": rebuilt.error.code if rebuilt.error else None,
                },
            )
            raise RequestFailed("PLAN_MISMATCH", "plan changed since approval was requested.", token_id=token_id)
        plan: Plan = rebuilt.value  # type: ignore[assignment]

        # blockers are outside the hash; a rebuilt plan can match and still be blocked
        drift = list(plan.blockers) + capability.revalidate(plan, policy)
        if drift:
            first = drift[0]
            self.audit.log_event(
                "plan_drift_detected",
                requester=requester,
                bot_id=bot_id,
                token=token_id,
                action_type=plan.action_type,
                risk_level=plan.risk_tier,
                decision="rejected",
                request_id=request_id,
                payload={"blockers": [item.get("code") for item in drift]},
            )
            raise RequestFailed(str(first.get("code")), str(first.get("message")), token_id=token_id)

        consumed = self.approvals.consume(
            token_id,
            consumed_by=requester,
            approved_by=requester,
            execution_request_id=request_id,
        )
        if not consumed.ok:
            raise RequestFailed.from_failure(consumed.error)  # type: ignore[arg-type]
        self.audit.log_event(
            "approval_decision",
            requester=requester,
            bot_id=bot_id,
            token=token_id,
            action_type=plan.action_type,
            risk_level=plan.risk_tier,
            decision="approve",
            request_id=request_id,
            payload={"approval_flags": normalize_flags(payload.get("approval_flags"))},
        )

        result = capability.execute(plan, policy)
        if result.get("ok") and policy.grant.enabled and policy.grant.grant_on_approval:
            granted = self.grants.create_grant(
                requester,
                policy,
                source_token=token_id,
                source_request_id=request_id,
                granted_by=requester,
            )
            if granted.ok:
                grant = granted.value
                result["approval_grant"] = grant
                self.audit.log_event(
                    "approval_grant_created",
                    requester=requester,
                    bot_id=bot_id,
                    token=token_id,
                    action_type=plan.action_type,
                    risk_level=plan.risk_tier,
                    decision="granted",
                    request_id=request_id,
                    payload={
                        "grant_id": grant["grant_id"],  # type: ignore[index]
                        "scope": grant["scope"],  # type: ignore[index]
                        "expires_at": grant["expires_at"],  # type: ignore[index]
                        "replaces_grant_id": grant["replaces_grant_id"],  # type: ignore[index]
                    },
                )
        row = self._report(envelope, requester, bot_id, plan, result, token=token_id)
        row.update({"token_id": token_id, "risk_tier": plan.risk_tier})
        return row

    def _deny(
        self,
        envelope: dict[str, Any],
        requester: str,
        bot_id: str,
        token_id: str,
        policy: PolicyConfig,
    ) -> dict[str, Any]:
        pending = self.approvals.read_any(token_id) or {}
        checked = self.approvals.validate(
            token_id,
            requester=requester,
            actor_bot_id=bot_id,
            provided_flags=pending.get("required_flags"),
            identity_mode=policy.identity_mode,
        )
        if not checked.ok:
            raise RequestFailed.from_failure(checked.error)  # type: ignore[arg-type]
        reason = (envelope.get("payload") or {}).get("reason")
        denied = self.approvals.deny(token_id, denied_by=requester, reason=reason)
        if not denied.ok:
            raise RequestFailed.from_failure(denied.error)  # type: ignore[arg-type]
        record: dict[str, Any] = denied.value  # type: ignore[assignment]
        self.audit.log_event(
            "approval_decision",
            requester=requester,
            bot_id=bot_id,
            token=token_id,
            action_type=record.get("action_type"),
            risk_level=record.get("risk_level"),
            decision="deny",
            request_id=envelope.get("request_id"),
            payload={"reason": reason},
        )
        self._notify(envelope, requester, f"[DENIED] {record.get('action_type')}\n- token: {token_id}")
        return {
            "ok": True,
            "decision": "deny",
            "token_id": token_id,
            "action_type": record.get("action_type"),
            "plan_summary": (record.get("plan") or {}).get("plan_summary"),
            "executed_steps": [],
        }
