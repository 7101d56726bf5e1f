from __future__ import annotations

import json
from typing import Any

from ..plans import Plan
from ..policy import MEDIUM, PolicyConfig
from ..results import Result
from .base import Capability, clamp_preview, failed, run_command, text_field


DOCKER = ("docker",)
DISPATCH_TIMEOUT_SECONDS = 300


def resolve_target(policy: PolicyConfig, value: str) -> tuple[str, str] | None:
    """Map an alias or container name to `(profile, container)`."""

    wanted = value.strip().lower()
    if not wanted:
        return None
    for profile, container in policy.bot.targets.items():
        if wanted in {profile, container.lower()}:
            return profile, container
    return None


def parse_container_table(stdout: str) -> dict[str, str]:
    rows: dict[str, str] = {}
    for line in stdout.splitlines():
        if not line.strip():
            continue
        name, _, status = line.partition("\t")
        rows[name.strip()] = status.strip()
    return rows


class BotCapability(Capability):
    """Status, restart and message hand-off for sibling agent containers."""

    name = "bot"
    actions = {
        "list": ("ls",),
        "status": ("ps", "health"),
        "restart": ("reboot",),
        "dispatch": ("delegate", "handoff"),
    }
    mutating_actions = frozenset({"restart", "dispatch"})

    def build_plan(
        self,
        action: str,
        payload: dict[str, Any],
        requester: str,
        context: dict[str, Any],
        policy: PolicyConfig,
    ) -> Result[Plan]:
        connector = self.detect_connector(DOCKER)
        blockers: list[dict[str, Any]] = []
        missing = self.connector_blocker(connector, DOCKER)
        if missing is not None:
            blockers.append(missing)
        raw_target = text_field(payload, "target_profile", "target", "bot")
        normalized: dict[str, Any] = {}
        targets: list[tuple[str, str]] = []

        if action in {"list", "status"} and raw_target.lower() in {"", "all"}:
            targets = sorted(policy.bot.targets.items())
        else:
            if not raw_target:
                return Result.failure("TARGET_REQUIRED", f"bot {action} requires a target.")
            resolved = resolve_target(policy, raw_target)
            if resolved is None:
                return Result.failure("TARGET_REQUIRED", f"unknown bot target '{raw_target}'.")
            if resolved[0] in policy.bot.denied_targets:
                return Result.failure("TARGET_NOT_ALLOWED", f"bot target '{resolved[0]}' does not accept {action}.")
            targets = [resolved]

        normalized["targets"] = [container for _, container in targets]
        if len(targets) == 1:
            normalized["target_profile"], normalized["target"] = targets[0]
        summary = f"bot {action} {', '.join(profile for profile, _ in targets) or 'none'}"
        if action == "dispatch":
            message = text_field(payload, "original_message", "message", "text")
            if not message:
                return Result.failure("ORIGINAL_MESSAGE_REQUIRED", "bot dispatch requires the original message.")
            normalized["original_message"] = message
            summary = f"dispatch message to {targets[0][0]}"
        return Result.success(
            Plan(
                capability=self.name,
                action=action,
                requested_by=requester,
                payload=normalized,
                target_path=normalized.get("target"),
                risk_tier=MEDIUM,
                mutating=action in self.mutating_actions,
                operations=tuple({"kind": f"bot_{action}", "container": container} for _, container in targets),
                blockers=tuple(blockers),
                plan_summary=summary,
                details={"connector": connector},
            )
        )

    def run(self, plan: Plan, policy: PolicyConfig) -> dict[str, Any]:
        if plan.action in {"list", "status"}:
            result = run_command(["docker", "ps", "-a", "--format", "{{.Names}}\t{{.Status}}"], timeout=30)
            if not result["ok"]:
                return failed("DOCKER_PS_FAILED", clamp_preview(result["error"] or "docker ps failed"))
            table = parse_container_table(result["stdout"])
            bots = [
                {"container": container, "status": table.get(container, "not found")}
                for container in plan.payload.get("targets", [])
            ]
            return {"ok": True, "executed_steps": ["docker ps"], "bots": bots}
        container = str(plan.payload["target"])
        if plan.action == "restart":
            result = run_command(["docker", "restart", container], timeout=120)
            if not result["ok"]:
                return failed("DOCKER_RESTART_FAILED", clamp_preview(result["error"] or "docker restart failed"))
            return {"ok": True, "executed_steps": [f"docker restart {container}"], "target": container}
        args = [
            "docker",
            "exec",
            "-w",
            policy.bot.dispatch_workdir,
            container,
            *policy.bot.dispatch_command,
            str(plan.payload["original_message"]),
        ]
        result = run_command(args, timeout=DISPATCH_TIMEOUT_SECONDS)
        if not result["ok"]:
            return failed("DISPATCH_EXEC_FAILED", clamp_preview(result["error"] or "dispatch failed"))
        reply: dict[str, Any] = {}
        try:
            parsed = json.loads(result["stdout"].strip() or "{}")
            if isinstance(parsed, dict):
                reply = parsed
        except json.JSONDecodeError:
            reply = {"reply": result["stdout"].strip()}
        if reply.get("ok") is False:
            return failed("DISPATCH_DELEGATED_FAILED", clamp_preview(str(reply.get("error") or "delegate failed")))
        return {
            "ok": True,
            "executed_steps": [f"docker exec {container} dispatch"],
            "target_profile": plan.payload.get("target_profile"),
            "route": reply.get("route"),
            "reply": clamp_preview(str(reply.get("reply") or reply.get("telegramReply") or "")),
        }
