from __future__ import annotations

import hashlib
import os
import re
from typing import Any

from ..plans import Plan, blocker
from ..policy import HIGH, MEDIUM, ExecRule, PolicyConfig
from ..results import Result
from .base import Capability, clamp_preview, failed, run_command, text_field


DEFAULT_TIMEOUT_SECONDS = 120


def _env_seconds(name: str, fallback: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return fallback
    try:
        value = int(raw)
    except ValueError:
        return fallback
    if value <= 0:
        return fallback
    return value


def _first_match(rules: tuple[ExecRule, ...], command: str) -> ExecRule | None:
    for rule in rules:
        try:
            if re.search(rule.pattern, command):
                return rule
        except re.error:
            continue
    return None


def classify_command(policy: PolicyConfig, command: str) -> dict[str, Any]:
    """Match a shell command against the deny, approval and allow lists, in that order."""

    exec_policy = policy.exec_policy
    denied = _first_match(exec_policy.denylist, command)
    if denied is not None:
        return {"decision": "denylist", "risk_tier": HIGH, "requires_approval": True, "rule": denied}
    gated = _first_match(exec_policy.require_approval, command)
    if gated is not None:
        return {"decision": "approval_required", "risk_tier": HIGH, "requires_approval": True, "rule": gated}
    allowed = _first_match(exec_policy.allow, command)
    if allowed is not None:
        return {"decision": "auto_execute", "risk_tier": MEDIUM, "requires_approval": False, "rule": allowed}
    if exec_policy.default_decision == "auto_execute":
        return {"decision": "auto_execute", "risk_tier": MEDIUM, "requires_approval": False, "rule": None}
    return {"decision": exec_policy.default_decision, "risk_tier": HIGH, "requires_approval": True, "rule": None}


def command_hash(command: str) -> str:
    return hashlib.sha256(command.encode("utf-8")).hexdigest()[:24]


class ExecCapability(Capability):
    name = "exec"
    actions = {"run": ("exec", "shell", "sh")}
    mutating_actions = frozenset({"run"})

    def build_plan(
        self,
        action: str,
        payload: dict[str, Any],
        requester: str,
        context: dict[str, Any],
        policy: PolicyConfig,
    ) -> Result[Plan]:
        command = text_field(payload, "command", "cmd")
        if not command:
            return Result.failure("COMMAND_REQUIRED", "exec run requires a command.")
        verdict = classify_command(policy, command)
        rule: ExecRule | None = verdict["rule"]
        cwd = text_field(payload, "cwd") or None
        normalized = {"command": command, "cwd": cwd}
        warnings: list[str] = []
        blockers: list[dict[str, Any]] = []
        if verdict["decision"] == "denylist":
            warnings.append(f"command matches denylist: {rule.reason if rule else 'denied'}")
        if verdict["decision"] == "deny":
            blockers.append(blocker("COMMAND_DENIED", "default exec policy denies unmatched commands."))
        if cwd and not os.path.isdir(os.path.expanduser(cwd)):
            blockers.append(blocker("CWD_NOT_FOUND", "working directory does not exist.", path=cwd))
        flags = ("force",) if verdict["requires_approval"] else ()
        return Result.success(
            Plan(
                capability=self.name,
                action=action,
                requested_by=requester,
                payload=normalized,
                risk_tier=verdict["risk_tier"],
                mutating=True,
                required_flags=flags,
                operations=({"kind": "shell", "command_hash": command_hash(command)},),
                blockers=tuple(blockers),
                warnings=tuple(warnings),
                plan_summary=f"run shell command ({verdict['decision']})",
                details={
                    "policy_decision": verdict["decision"],
                    "policy_reason": rule.reason if rule else "default decision",
                    "command_preview": clamp_preview(command, 200),
                },
            )
        )

    def run(self, plan: Plan, policy: PolicyConfig) -> dict[str, Any]:
        command = str(plan.payload.get("command", ""))
        cwd = plan.payload.get("cwd")
        timeout = _env_seconds("OPSGATE_EXEC_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
        result = run_command(
            ["sh", "-lc", command],
            cwd=os.path.expanduser(cwd) if cwd else None,
            timeout=timeout,
        )
        outcome = {
            "command_hash": command_hash(command),
            "exit_code": result["code"],
            "stdout": clamp_preview(result["stdout"]),
            "stderr": clamp_preview(result["stderr"]),
        }
        if not result["ok"]:
            return failed("EXEC_COMMAND_FAILED", clamp_preview(result["error"] or "command failed"), **outcome)
        return {"ok": True, "executed_steps": ["sh -lc <command>"], **outcome}
