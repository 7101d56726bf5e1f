from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any

import uvicorn

from .api import create_app
from .results import OpsGateError
from .service import OpsGateService


def _service() -> OpsGateService:
    return OpsGateService.create()


def _payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise OpsGateError("INVALID_PAYLOAD", f"payload is not valid JSON: {exc.msg}") from exc
    if not isinstance(value, dict):
        raise OpsGateError("INVALID_PAYLOAD", "payload must be a JSON object.")
    return value


def _context(args: argparse.Namespace) -> dict[str, Any] | None:
    context = {
        key: value
        for key, value in {
            "provider": getattr(args, "provider", None),
            "user_id": getattr(args, "user_id", None),
            "group_id": getattr(args, "group_id", None),
        }.items()
        if value
    }
    return context or None


def _add_identity(cmd: argparse.ArgumentParser, default_requester: str) -> None:
    cmd.add_argument("--requested-by", default=default_requester, help="Requester identity")
    cmd.add_argument("--bot-id", default=os.environ.get("OPSGATE_BOT_ID"), help="Acting bot identifier")
    cmd.add_argument("--provider", default=None, help="Chat provider of the identity context")
    cmd.add_argument("--user-id", default=None, help="Chat user id")
    cmd.add_argument("--group-id", default=None, help="Chat group id")


def main() -> int:
    parser = argparse.ArgumentParser(description="opsgate approval engine CLI")
    sub = parser.add_subparsers(dest="command", required=True)
    default_requester = os.environ.get("OPSGATE_REQUESTER", "operator")

    enqueue_cmd = sub.add_parser("enqueue", help="Queue a plan request")
    enqueue_cmd.add_argument("capability", help="Capability name (file, exec, mail, photo, schedule, browser, bot)")
    enqueue_cmd.add_argument("action", help="Capability action")
    enqueue_cmd.add_argument("--payload", default=None, help="JSON object payload")
    enqueue_cmd.add_argument("--request-id", default=None)
    enqueue_cmd.add_argument("--run", action="store_true", help="Drain the queue and print this request's result")
    _add_identity(enqueue_cmd, default_requester)

    approve_cmd = sub.add_parser("approve", help="Approve and execute a pending token")
    approve_cmd.add_argument("token_id")
    approve_cmd.add_argument("--flag", action="append", default=[], help="Approval flag such as force (repeatable)")
    approve_cmd.add_argument("--queue-only", action="store_true", help="Queue the decision without running the worker")
    _add_identity(approve_cmd, default_requester)

    deny_cmd = sub.add_parser("deny", help="Deny a pending token")
    deny_cmd.add_argument("token_id")
    deny_cmd.add_argument("--reason", default=None)
    deny_cmd.add_argument("--queue-only", action="store_true", help="Queue the decision without running the worker")
    _add_identity(deny_cmd, default_requester)

    work_cmd = sub.add_parser("work", help="Drain the command queue")
    work_cmd.add_argument("--max-items", type=int, default=None)

    approvals_cmd = sub.add_parser("approvals", help="Approval token operations")
    approvals_sub = approvals_cmd.add_subparsers(dest="approvals_command", required=True)
    approvals_sub.add_parser("list", help="List pending approval tokens")
    approvals_sub.add_parser("gc", help="Expire past-due tokens")

    grants_cmd = sub.add_parser("grants", help="Standing approval grants")
    grants_sub = grants_cmd.add_subparsers(dest="grants_command", required=True)
    grants_show = grants_sub.add_parser("show", help="Show the active grant for a requester")
    grants_show.add_argument("requester")
    grants_create = grants_sub.add_parser("create", help="Create or replace a grant")
    grants_create.add_argument("requester")
    grants_create.add_argument("--scope", default=None)
    grants_create.add_argument("--ttl-seconds", type=int, default=None)
    grants_revoke = grants_sub.add_parser("revoke", help="Revoke a requester's grant")
    grants_revoke.add_argument("requester")

    audit_cmd = sub.add_parser("audit", help="Audit log operations")
    audit_sub = audit_cmd.add_subparsers(dest="audit_command", required=True)
    audit_summary = audit_sub.add_parser("summary", help="Summarize audit events")
    audit_summary.add_argument("--range", default="7d", help="Range window like 7d or 24h")
    audit_summary.add_argument("--requester", default=None, help="Optional requester filter")

    policy_cmd = sub.add_parser("policy", help="Policy operations")
    policy_sub = policy_cmd.add_subparsers(dest="policy_command", required=True)
    policy_sub.add_parser("show", help="Print the effective policy")

    api_cmd = sub.add_parser("api", help="Run local API server")
    api_cmd.add_argument("--host", default="127.0.0.1")
    api_cmd.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()
    service = _service()

    try:
        return _dispatch(args, service)
    except OpsGateError as exc:
        print(json.dumps(exc.to_dict(), indent=2), file=sys.stderr)
        return 2


def _dispatch(args: argparse.Namespace, service: OpsGateService) -> int:
    if args.command == "enqueue":
        envelope = service.enqueue(
            capability=args.capability,
            action=args.action,
            requested_by=args.requested_by,
            payload=_payload(args.payload),
            context=_context(args),
            actor_bot_id=args.bot_id,
            request_id=args.request_id,
        )
        if args.run:
            service.run_worker()
            print(json.dumps(service.result_for(envelope["request_id"]), indent=2))
        else:
            print(json.dumps(envelope, indent=2))
        return 0

    if args.command == "approve":
        result = service.approve(
            args.token_id,
            requested_by=args.requested_by,
            approval_flags=args.flag,
            actor_bot_id=args.bot_id,
            context=_context(args),
            run_now=not args.queue_only,
        )
        print(json.dumps(result, indent=2))
        return 0 if result.get("ok", True) else 1

    if args.command == "deny":
        result = service.deny(
            args.token_id,
            requested_by=args.requested_by,
            actor_bot_id=args.bot_id,
            context=_context(args),
            reason=args.reason,
            run_now=not args.queue_only,
        )
        print(json.dumps(result, indent=2))
        return 0 if result.get("ok", True) else 1

    if args.command == "work":
        print(json.dumps(service.run_worker(max_items=args.max_items), indent=2))
        return 0

    if args.command == "approvals":
        if args.approvals_command == "list":
            print(json.dumps(service.list_pending_approvals(), indent=2))
            return 0
        if args.approvals_command == "gc":
            print(json.dumps(service.gc_approvals(), indent=2))
            return 0

    if args.command == "grants":
        if args.grants_command == "show":
            print(json.dumps(service.show_grant(args.requester), indent=2))
            return 0
        if args.grants_command == "create":
            print(json.dumps(service.create_grant(args.requester, scope=args.scope, ttl_seconds=args.ttl_seconds), indent=2))
            return 0
        if args.grants_command == "revoke":
            print(json.dumps(service.revoke_grant(args.requester), indent=2))
            return 0

    if args.command == "audit" and args.audit_command == "summary":
        print(json.dumps(service.audit_summary(range_value=args.range, requester=args.requester), indent=2))
        return 0

    if args.command == "policy" and args.policy_command == "show":
        print(json.dumps(service.policy_show(), indent=2))
        return 0

    if args.command == "api":
        uvicorn.run(create_app(service), host=args.host, port=args.port)
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
