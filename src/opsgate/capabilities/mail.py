from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from ..plans import Plan, blocker
from ..policy import HIGH, MEDIUM, PolicyConfig
from ..results import Result
from ..security import hash_email
from ..store import append_jsonl
from .base import Capability, clamp_preview, failed, int_field, run_command, text_field


CONNECTORS = ("himalaya",)
MAX_LIST_LIMIT = 50


class MailCapability(Capability):
    """Mailbox listing through the connector; sends are recorded as reviewed drafts."""

    name = "mail"
    actions = {
        "list": ("inbox", "ls"),
        "summary": ("summarize", "digest"),
        "send": ("reply", "compose"),
    }
    mutating_actions = frozenset({"send"})

    def build_plan(
        self,
        action: str,
        payload: dict[str, Any],
        requester: str,
        context: dict[str, Any],
        policy: PolicyConfig,
    ) -> Result[Plan]:
        connector = self.detect_connector(CONNECTORS)
        blockers: list[dict[str, Any]] = []
        warnings: list[str] = []
        mutating = action in self.mutating_actions
        missing_connector = self.connector_blocker(connector, CONNECTORS)
        if missing_connector is not None:
            if mutating:
                warnings.append("mail connector unavailable; the send is recorded as a draft only.")
            else:
                blockers.append(missing_connector)
        normalized: dict[str, Any] = {"folder": text_field(payload, "folder") or "INBOX"}
        summary = f"mail {action}"
        if action in {"list", "summary"}:
            normalized["limit"] = int_field(payload, "limit", 10, low=1, high=MAX_LIST_LIMIT)
            summary = f"mail {action} {normalized['folder']} (limit {normalized['limit']})"
        else:
            recipient = text_field(payload, "to", "recipient")
            subject = text_field(payload, "subject")
            if not recipient:
                blockers.append(blocker("RECIPIENT_REQUIRED", "mail send requires a recipient."))
            if not subject:
                blockers.append(blocker("SUBJECT_REQUIRED", "mail send requires a subject."))
            normalized.update({"to": recipient, "subject": subject, "body": str(payload.get("body") or "")})
            summary = f"send mail to {hash_email(recipient) if recipient else '<missing>'}"
        return Result.success(
            Plan(
                capability=self.name,
                action=action,
                requested_by=requester,
                payload=normalized,
                risk_tier=HIGH if mutating else MEDIUM,
                mutating=mutating,
                required_flags=("force",) if mutating else (),
                operations=({"kind": f"mail_{action}"},),
                blockers=tuple(blockers),
                warnings=tuple(warnings),
                plan_summary=summary,
                details={"connector": connector},
            )
        )

    def run(self, plan: Plan, policy: PolicyConfig) -> dict[str, Any]:
        if plan.action == "send":
            draft = {
                "recorded_at": datetime.now(tz=UTC).isoformat(),
                "requested_by": plan.requested_by,
                "to": plan.payload.get("to"),
                "subject": plan.payload.get("subject"),
                "body_chars": len(str(plan.payload.get("body") or "")),
                "status": "draft_recorded",
            }
            append_jsonl(self.state_file("mail_drafts.jsonl"), draft)
            return {"ok": True, "executed_steps": ["recorded mail draft"], "draft_status": "draft_recorded"}
        connector = str(plan.details.get("connector") or CONNECTORS[0])
        args = [connector, "envelope", "list", "--folder", str(plan.payload["folder"]), "--page-size", str(plan.payload["limit"])]
        result = run_command(args, timeout=60)
        if not result["ok"]:
            return failed("MAIL_CONNECTOR_FAILED", clamp_preview(result["error"] or "connector failed"))
        lines = [line for line in result["stdout"].splitlines() if line.strip()]
        return {
            "ok": True,
            "executed_steps": [f"{connector} envelope list"],
            "message_count": max(0, len(lines) - 1),
            "preview": clamp_preview("\n".join(lines[: int(plan.payload["limit"]) + 1])),
        }
