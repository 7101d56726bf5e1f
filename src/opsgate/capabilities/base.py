from __future__ import annotations

"""Shared plan/execute contract for capability handlers."""

import os
import shutil
import subprocess
from dataclasses import replace
from pathlib import Path
from typing import Any

from ..plans import Plan, blocker
from ..policy import RISK_RANK, PolicyConfig, RiskDecision, normalize_flags, resolve_action_risk_policy
from ..results import Result
from ..security import redact_text


PREVIEW_CHARS = 600


def command_exists(name: str) -> bool:
    return shutil.which(name) is not None


def clamp_preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    redacted, _ = redact_text(text or "")
    if len(redacted) > limit:
        return f"{redacted[:limit]}...[truncated]"
    return redacted


def run_command(
    args: list[str],
    *,
    cwd: str | None = None,
    timeout: float | None = 60,
    env: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Run an external tool and fold its outcome into a plain result mapping."""

    try:
        completed = subprocess.run(  # noqa: S603
            args,
            cwd=cwd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
        )
    except subprocess.TimeoutExpired as exc:
        return {
            "ok": False,
            "code": None,
            "stdout": exc.stdout if isinstance(exc.stdout, str) else "",
            "stderr": exc.stderr if isinstance(exc.stderr, str) else "",
            "error": f"timed out after {timeout}s",
        }
    except OSError as exc:
        return {"ok": False, "code": None, "stdout": "", "stderr": "", "error": str(exc)}
    return {
        "ok": completed.returncode == 0,
        "code": completed.returncode,
        "stdout": completed.stdout or "",
        "stderr": completed.stderr or "",
        "error": None if completed.returncode == 0 else (completed.stderr or completed.stdout or "").strip(),
    }


def text_field(payload: dict[str, Any], *names: str) -> str:
    for name in names:
        value = payload.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def int_field(payload: dict[str, Any], name: str, default: int, *, low: int, high: int) -> int:
    try:
        value = int(payload.get(name, default))
    except (TypeError, ValueError):
        value = default
    return max(low, min(high, value))


def failed(error_code: str, error: str, **extra: Any) -> dict[str, Any]:
    result: dict[str, Any] = {"ok": False, "error_code": error_code, "error": error, "executed_steps": []}
    result.update(extra)
    return result


class Capability:
    """Base class for one capability: action aliases, plan building, execution.

    Subclasses implement `build_plan` and `run`; the public `plan` and
    `execute` wrap them with alias resolution, policy resolution and the
    blocker check.
    """

    name = ""
    domain = "capability"
    actions: dict[str, tuple[str, ...]] = {}
    mutating_actions: frozenset[str] = frozenset()

    def __init__(self, state_dir: Path | None = None) -> None:
        self.state_dir = state_dir

    def canonical_action(self, action: str) -> str | None:
        wanted = (action or "").strip().lower().replace("-", "_")
        for canonical, aliases in self.actions.items():
            if wanted == canonical or wanted in aliases:
                return canonical
        return None

    def rule_key(self, action: str) -> str:
        if self.domain == "file":
            return action
        return f"{self.name}:{action}"

    def plan(
        self,
        action: str,
        payload: dict[str, Any],
        requester: str,
        context: dict[str, Any],
        policy: PolicyConfig,
    ) -> Result[Plan]:
        canonical = self.canonical_action(action)
        if canonical is None:
            return Result.failure(
                "UNSUPPORTED_ACTION",
                f"{self.name} does not support action '{action}'.",
                capability=self.name,
                action=action,
            )
        built = self.build_plan(canonical, dict(payload or {}), requester, context or {}, policy)
        if not built.ok:
            return built
        return Result.success(self.finalize_plan(built.value, policy))  # type: ignore[arg-type]

    def finalize_plan(self, plan: Plan, policy: PolicyConfig) -> Plan:
        """Apply the risk table over the builder's own guess.

        A table rule never lowers a path-derived tier below its rank.
        """

        fallback_flags = normalize_flags(plan.required_flags)
        fallback = RiskDecision(
            risk_tier=plan.risk_tier,
            requires_approval=plan.mutating and bool(fallback_flags),
            required_flags=tuple(fallback_flags),
            source="fallback",
        )
        decision = resolve_action_risk_policy(policy, self.domain, self.rule_key(plan.action), fallback)
        risk_tier = decision.risk_tier
        if risk_tier in RISK_RANK and plan.risk_tier in RISK_RANK and RISK_RANK[plan.risk_tier] > RISK_RANK[risk_tier]:
            risk_tier = plan.risk_tier
        flags = decision.required_flags if plan.mutating else ()
        details = dict(plan.details)
        details["risk_policy_source"] = decision.source
        return replace(
            plan,
            intent_action=plan.intent_action or f"{plan.capability}:{plan.action}",
            risk_tier=risk_tier,
            requires_approval=bool(flags),
            required_flags=tuple(flags),
            details=details,
        )

    def revalidate(self, plan: Plan, policy: PolicyConfig) -> list[dict[str, Any]]:
        return []

    def execute(self, plan: Plan, policy: PolicyConfig) -> dict[str, Any]:
        if plan.blockers:
            first = plan.blockers[0]
            return failed(
                str(first.get("code", "PLAN_BLOCKED")),
                str(first.get("message", "plan has unresolved blockers.")),
                blockers=list(plan.blockers),
            )
        try:
            result = self.run(plan, policy)
        except Exception as exc:  # noqa: BLE001
            return failed("CAPABILITY_EXECUTE_FAILED", f"{exc.__class__.__name__}: {exc}")
        result.setdefault("executed_steps", [])
        result.setdefault("error_code", None if result.get("ok") else "CAPABILITY_EXECUTE_FAILED")
        result.setdefault("error", None)
        return result

    def build_plan(
        self,
        action: str,
        payload: dict[str, Any],
        requester: str,
        context: dict[str, Any],
        policy: PolicyConfig,
    ) -> Result[Plan]:
        raise NotImplementedError

    def run(self, plan: Plan, policy: PolicyConfig) -> dict[str, Any]:
        raise NotImplementedError

    def connector_blocker(self, connector: str | None, candidates: tuple[str, ...]) -> dict[str, Any] | None:
        if connector:
            return None
        return blocker(
            "CONNECTOR_UNAVAILABLE",
            f"{self.name} connector not found on PATH (tried: {', '.join(candidates)}).",
        )

    def detect_connector(self, candidates: tuple[str, ...]) -> str | None:
        for candidate in candidates:
            if command_exists(candidate):
                return candidate
        return None

    def state_file(self, name: str) -> Path:
        base = self.state_dir or Path(os.getcwd())
        base.mkdir(parents=True, exist_ok=True)
        return base / name
