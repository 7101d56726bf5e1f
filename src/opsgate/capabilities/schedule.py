from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from ..plans import Plan, blocker
from ..policy import HIGH, MEDIUM, PolicyConfig
from ..results import Result
from ..store import append_jsonl
from .base import Capability, clamp_preview, failed, int_field, run_command, text_field


CONNECTORS = ("remindctl",)
ROLLBACK = ("schedule changes may need manual correction in the calendar or reminders app.",)


class ScheduleCapability(Capability):
    """Reminder/calendar requests; mutations are recorded for the connector to pick up."""

    name = "schedule"
    actions = {
        "list": ("ls", "agenda"),
        "create": ("add", "new"),
        "update": ("edit", "move"),
        "delete": ("remove", "cancel"),
    }
    mutating_actions = frozenset({"create", "update", "delete"})

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
                warnings.append("schedule connector unavailable; the request is queued for later sync.")
            else:
                blockers.append(missing)
        normalized: dict[str, Any] = {}
        if action == "list":
            normalized["days"] = int_field(payload, "days", 7, low=1, high=90)
            summary = f"list schedule for {normalized['days']} day(s)"
        else:
            when = text_field(payload, "when", "time", "due")
            title = text_field(payload, "title", "name")
            item_id = text_field(payload, "id", "item_id")
            if not when and action != "delete":
                blockers.append(blocker("TIME_REQUIRED", f"schedule {action} requires when."))
            if action == "create" and not title:
                blockers.append(blocker("TITLE_REQUIRED", "schedule create requires a title."))
            if action in {"update", "delete"} and not item_id and not title:
                blockers.append(blocker("TARGET_REQUIRED", f"schedule {action} requires an id or title."))
            normalized.update({"when": when, "title": title, "id": item_id, "notes": str(payload.get("notes") or "")})
            summary = f"{action} schedule item '{title or item_id or '?'}' at {when or '-'}"
        return Result.success(
            Plan(
                capability=self.name,
                action=action,
                requested_by=requester,
                payload=normalized,
                risk_tier=HIGH if mutating else MEDIUM,
                mutating=mutating,
                required_flags=("force",) if mutating else (),
                operations=({"kind": f"schedule_{action}"},),
                rollback_instructions=ROLLBACK if mutating else (),
                blockers=tuple(blockers),
                warnings=tuple(warnings),
                plan_summary=summary,
                details={"connector": connector},
            )
        )

    def run(self, plan: Plan, policy: PolicyConfig) -> dict[str, Any]:
        if plan.action == "list":
            connector = str(plan.details.get("connector") or CONNECTORS[0])
            result = run_command([connector, "list", "--days", str(plan.payload["days"])], timeout=60)
            if not result["ok"]:
                return failed("SCHEDULE_CONNECTOR_FAILED", clamp_preview(result["error"] or "connector failed"))
            return {"ok": True, "executed_steps": [f"{connector} list"], "preview": clamp_preview(result["stdout"])}
        request = {
            "recorded_at": datetime.now(tz=UTC).isoformat(),
            "requested_by": plan.requested_by,
            "action": plan.action,
            "when": plan.payload.get("when"),
            "title": plan.payload.get("title"),
            "id": plan.payload.get("id"),
            "status": "queued_for_connector",
        }
        append_jsonl(self.state_file("schedule_requests.jsonl"), request)
        return {"ok": True, "executed_steps": [f"recorded schedule {plan.action} request"]}
