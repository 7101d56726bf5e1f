from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from ..plans import Plan, blocker
from ..policy import HIGH, MEDIUM, PolicyConfig
from ..results import Result
from ..store import append_jsonl
from .base import Capability, clamp_preview, failed, run_command, text_field


CONNECTORS = ("openclaw", "playwright")
URL_ACTIONS = {"open", "checkout", "post", "send"}
SELECTOR_ACTIONS = {"click", "type"}


class BrowserCapability(Capability):
    name = "browser"
    actions = {
        "open": ("goto", "navigate"),
        "list": ("tabs",),
        "click": (),
        "type": ("fill",),
        "wait": (),
        "screenshot": ("capture",),
        "checkout": ("purchase", "buy"),
        "post": ("publish",),
        "send": ("submit",),
    }
    mutating_actions = frozenset({"checkout", "post", "send"})

    def build_plan(
        self,
        action: str,
        payload: dict[str, Any],
        requester: str,
        context: dict[str, Any],
        policy: PolicyConfig,
    ) -> Result[Plan]:
        connector = self.detect_connector(CONNECTORS)
        mutating = action in self.mutating_actions
        blockers: list[dict[str, Any]] = []
        warnings: list[str] = []
        missing = self.connector_blocker(connector, CONNECTORS)
        if missing is not None:
            if mutating:
                warnings.append("browser connector unavailable; the request is recorded for manual replay.")
            else:
                blockers.append(missing)
        url = text_field(payload, "url")
        selector = text_field(payload, "selector")
        value = payload.get("value", payload.get("text"))
        if action in URL_ACTIONS and not url:
            blockers.append(blocker("URL_REQUIRED", f"browser {action} requires a url."))
        if action in SELECTOR_ACTIONS and not selector:
            blockers.append(blocker("SELECTOR_REQUIRED", f"browser {action} requires a selector."))
        if action == "type" and (value is None or str(value) == ""):
            blockers.append(blocker("VALUE_REQUIRED", "browser type requires a value."))
        normalized = {
            "url": url or None,
            "selector": selector or None,
            "value": None if value is None else str(value),
            "timeout_ms": payload.get("timeout_ms"),
        }
        target = url or selector or "current page"
        return Result.success(
            Plan(
                capability=self.name,
                action=action,
                requested_by=requester,
                payload=normalized,
                target_path=url or None,
                risk_tier=HIGH if mutating else MEDIUM,
                mutating=mutating,
                required_flags=("force",) if mutating else (),
                operations=({"kind": f"browser_{action}"},),
                blockers=tuple(blockers),
                warnings=tuple(warnings),
                plan_summary=f"browser {action} {target}",
                details={"connector": connector},
            )
        )

    def run(self, plan: Plan, policy: PolicyConfig) -> dict[str, Any]:
        if plan.mutating:
            request = {
                "recorded_at": datetime.now(tz=UTC).isoformat(),
                "requested_by": plan.requested_by,
                "action": plan.action,
                "url": plan.payload.get("url"),
                "status": "recorded_for_replay",
            }
            append_jsonl(self.state_file("browser_requests.jsonl"), request)
            return {"ok": True, "executed_steps": [f"recorded browser {plan.action} request"]}
        connector = str(plan.details.get("connector") or CONNECTORS[0])
        args = [connector, "browser", plan.action]
        for key in ("url", "selector", "value"):
            if plan.payload.get(key):
                args.extend([f"--{key}", str(plan.payload[key])])
        result = run_command(args, timeout=90)
        if not result["ok"]:
            return failed("BROWSER_CONNECTOR_FAILED", clamp_preview(result["error"] or "connector failed"))
        return {"ok": True, "executed_steps": [f"{connector} browser {plan.action}"], "output": clamp_preview(result["stdout"])}
