from __future__ import annotations

"""Operator notifications: reply text formatting and the default outbox notifier."""

import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from .plans import Plan
from .security import redact_text
from .store import append_jsonl


MAX_BLOCKERS = 3
MAX_PATHS = 10
MAX_ROLLBACK_LINES = 3
MAX_DETAIL_CHARS = 220


class Notifier(Protocol):
    def notify(
        self,
        text: str,
        *,
        request_id: str | None = None,
        requested_by: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None: ...


class OutboxNotifier:
    """Append replies to `notifications/outbox.jsonl` for a delivery agent to pick up."""

    def __init__(self, outbox_path: Path) -> None:
        self.outbox_path = outbox_path

    def notify(
        self,
        text: str,
        *,
        request_id: str | None = None,
        requested_by: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        try:
            append_jsonl(
                self.outbox_path,
                {
                    "created_at": datetime.now(tz=UTC).isoformat(),
                    "request_id": request_id,
                    "requested_by": requested_by,
                    "context": context or {},
                    "text": text,
                },
            )
        except OSError as exc:
            print(f"[notify] failed to append notification: {exc}", file=sys.stderr)


def _grant_line(grant: dict[str, Any] | None) -> str | None:
    if not isinstance(grant, dict):
        return None
    scope = str(grant.get("scope") or "all")
    expires_at = str(grant.get("expires_at") or "").strip()
    return f"- approval grant: active ({scope}{f' until {expires_at}' if expires_at else ''})"


def _rollback_lines(lines: list[str], rollback: Any) -> None:
    if not rollback:
        return
    lines.append("- rollback:")
    for line in list(rollback)[:MAX_ROLLBACK_LINES]:
        lines.append(f"  - {line}")


def _yes_no(value: Any) -> str:
    return "yes" if value else "no"


def format_plan_reply(plan: Plan, token: dict[str, Any] | None = None) -> str:
    lines = [f"[PLAN] {plan.intent_action or plan.action_type}"]
    lines.append(f"- risk: {plan.risk_tier}")
    lines.append(f"- mutating: {_yes_no(plan.mutating)}")
    lines.append(f"- files: {len(plan.exact_paths)}")
    grant = _grant_line(plan.approval_grant)
    if grant:
        lines.append(grant)
    if plan.plan_summary:
        lines.append(f"- summary: {plan.plan_summary.replace(chr(10), ' | ')}")
    if plan.required_flags:
        lines.append(f"- required approval flags: {' '.join(f'--{flag}' for flag in plan.required_flags)}")
    if plan.warnings:
        lines.append(f"- warnings: {'; '.join(plan.warnings[:MAX_BLOCKERS])}")
    if plan.blockers:
        codes = ", ".join(str(item.get("code")) for item in plan.blockers[:MAX_BLOCKERS])
        lines.append(f"- blockers: {codes}")
    preflight = plan.details.get("preflight")
    if isinstance(preflight, dict):
        lines.append(
            f"- preflight: mounted={_yes_no(preflight.get('mounted'))}, "
            f"writable={_yes_no(preflight.get('writable'))}, free_ok={_yes_no(preflight.get('free_ok'))}"
        )
    if token:
        lines.append(f"- token: {token.get('token_id')}")
        lines.append(f"- expires: {token.get('expires_at')}")
    if plan.exact_paths:
        lines.append("- paths:")
        for item in plan.exact_paths[:MAX_PATHS]:
            lines.append(f"  - {item}")
        if len(plan.exact_paths) > MAX_PATHS:
            lines.append(f"  - ... +{len(plan.exact_paths) - MAX_PATHS} more")
    _rollback_lines(lines, plan.rollback_instructions)
    return "\n".join(lines)


def format_execute_reply(action_type: str, result: dict[str, Any]) -> str:
    ok = bool(result.get("ok"))
    lines = [f"[{'OK' if ok else 'FAILED'}] {action_type or 'execute'}"]
    grant = _grant_line(result.get("approval_grant"))
    if grant:
        lines.append(grant)
    steps = result.get("executed_steps") or []
    lines.append(f"- steps: {len(steps)}")
    counts = result.get("file_counts")
    if isinstance(counts, dict):
        lines.append(
            f"- moved: {int(counts.get('moved', 0))}, trashed: {int(counts.get('trashed', 0))}, "
            f"restored: {int(counts.get('restored', 0))}"
        )
        lines.append(f"- hashed: {len(result.get('hashes') or [])}")
    if result.get("error_code"):
        lines.append(f"- error: {result['error_code']}")
    if result.get("error"):
        lines.append(f"- detail: {_detail(result['error'])}")
    _rollback_lines(lines, result.get("rollback_instructions"))
    return "\n".join(lines)


def format_failure_reply(request_id: str | None, error_code: str, error: str) -> str:
    lines = [f"[FAILED] {request_id or 'request'}", f"- error: {error_code}"]
    if error:
        lines.append(f"- detail: {_detail(error)}")
    return "\n".join(lines)


def _detail(error: Any) -> str:
    redacted, _ = redact_text(str(error))
    return redacted[:MAX_DETAIL_CHARS]
