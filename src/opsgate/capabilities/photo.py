from __future__ import annotations

import os
import time
from datetime import UTC, datetime
from typing import Any

from ..plans import Plan, blocker
from ..policy import HIGH, MEDIUM, PolicyConfig, expand_path
from ..results import Result
from .base import Capability, clamp_preview, failed, int_field, run_command, text_field


CONNECTORS = ("camsnap",)
PHOTO_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".heic"}
DEFAULT_OLDER_THAN_HOURS = 720
DEFAULT_CLEANUP_LIMIT = 50
MAX_CLEANUP_LIMIT = 1000


def list_photos(root: str) -> list[str]:
    photos: list[str] = []
    for name in sorted(os.listdir(root)):
        path = os.path.join(root, name)
        if os.path.isfile(path) and os.path.splitext(name)[1].lower() in PHOTO_EXTENSIONS:
            photos.append(path)
    return photos


class PhotoCapability(Capability):
    name = "photo"
    actions = {
        "capture": ("snap", "take"),
        "list": ("ls", "recent"),
        "cleanup": ("prune", "clean"),
    }
    mutating_actions = frozenset({"capture", "cleanup"})

    def build_plan(
        self,
        action: str,
        payload: dict[str, Any],
        requester: str,
        context: dict[str, Any],
        policy: PolicyConfig,
    ) -> Result[Plan]:
        root = expand_path(text_field(payload, "root", "dir") or policy.photo_root)
        blockers: list[dict[str, Any]] = []
        details: dict[str, Any] = {"root": root}
        normalized: dict[str, Any] = {"root": root}
        exact_paths: tuple[str, ...] = ()
        mutating = action in self.mutating_actions
        risk_tier = MEDIUM
        flags: tuple[str, ...] = ()

        if action == "capture":
            connector = self.detect_connector(CONNECTORS)
            details["connector"] = connector
            missing = self.connector_blocker(connector, CONNECTORS)
            if missing is not None:
                blockers.append(missing)
            normalized["label"] = text_field(payload, "label") or "capture"
            summary = f"capture photo into {root}"
        elif not os.path.isdir(root):
            blockers.append(blocker("PHOTO_DIR_MISSING", "photo directory does not exist.", path=root))
            summary = f"photo {action} {root}"
        elif action == "list":
            normalized["limit"] = int_field(payload, "limit", 20, low=1, high=200)
            summary = f"list photos in {root}"
        else:
            hours = int_field(payload, "older_than_hours", DEFAULT_OLDER_THAN_HOURS, low=1, high=24 * 3650)
            limit = int_field(payload, "limit", DEFAULT_CLEANUP_LIMIT, low=1, high=MAX_CLEANUP_LIMIT)
            cutoff = time.time() - hours * 3600
            candidates = [path for path in list_photos(root) if os.path.getmtime(path) < cutoff][:limit]
            normalized.update({"older_than_hours": hours, "limit": limit})
            exact_paths = tuple(candidates)
            risk_tier = HIGH
            flags = ("force",)
            summary = f"delete {len(candidates)} photo(s) older than {hours}h in {root}"
        return Result.success(
            Plan(
                capability=self.name,
                action=action,
                requested_by=requester,
                payload=normalized,
                source_candidates=exact_paths,
                target_path=root,
                risk_tier=risk_tier,
                mutating=mutating,
                required_flags=flags,
                exact_paths=exact_paths,
                operations=({"kind": f"photo_{action}", "count": len(exact_paths)},),
                blockers=tuple(blockers),
                plan_summary=summary,
                details=details,
            )
        )

    def revalidate(self, plan: Plan, policy: PolicyConfig) -> list[dict[str, Any]]:
        missing = [path for path in plan.exact_paths if not os.path.exists(path)]
        if missing:
            return [blocker("PLAN_MISMATCH", "photo scheduled for cleanup no longer exists.", path=missing[0])]
        return []

    def run(self, plan: Plan, policy: PolicyConfig) -> dict[str, Any]:
        root = str(plan.payload["root"])
        if plan.action == "list":
            photos = list_photos(root)[-int(plan.payload.get("limit", 20)) :]
            return {"ok": True, "executed_steps": [f"listed {len(photos)} photo(s)"], "photos": photos}
        if plan.action == "capture":
            os.makedirs(root, exist_ok=True)
            stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%SZ")
            out_path = os.path.join(root, f"{plan.payload.get('label', 'capture')}_{stamp}.jpg")
            connector = str(plan.details.get("connector") or CONNECTORS[0])
            result = run_command([connector, "snap", "--out", out_path], timeout=60)
            if not result["ok"]:
                return failed("PHOTO_CAPTURE_FAILED", clamp_preview(result["error"] or "capture failed"))
            return {"ok": True, "executed_steps": [f"{connector} snap"], "path": out_path}
        deleted: list[str] = []
        for path in plan.exact_paths:
            try:
                os.remove(path)
            except OSError as exc:
                return failed(
                    "PHOTO_CLEANUP_FAILED",
                    f"{exc.__class__.__name__}: {exc}",
                    executed_steps=[f"deleted {p}" for p in deleted],
                    deleted_count=len(deleted),
                )
            deleted.append(path)
        return {
            "ok": True,
            "executed_steps": [f"deleted {p}" for p in deleted],
            "deleted_count": len(deleted),
        }
