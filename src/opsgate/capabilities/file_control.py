from __future__ import annotations

"""File-control capability: local moves, trash/restore, external drives and git."""

import errno
import glob
import hashlib
import json
import os
import shutil
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..plans import Plan, blocker
from ..policy import (
    GIT_AWARE,
    HIGH_PRECHECK,
    PolicyConfig,
    classify_risk_tier,
    expand_path,
    has_git_component,
    is_git_action,
    is_within,
    is_within_any,
    required_flags_for_plan,
)
from ..results import Result
from .base import Capability, clamp_preview, failed, run_command, text_field


GLOB_CHARS = set("*?[")
MAX_LIST_ENTRIES = 200
GIT_TIMEOUT_SECONDS = 30
GIT_PUSH_TIMEOUT_SECONDS = 120


def _now() -> datetime:
    return datetime.now(tz=UTC)


def _resolve(value: str, base: str | None = None) -> str:
    text = os.path.expanduser(str(value).strip())
    if base and not os.path.isabs(text):
        text = os.path.join(base, text)
    return os.path.abspath(text)


def _quote(path: str) -> str:
    return '"' + path.replace('"', '\\"') + '"'


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    text = str(value).strip()
    return [text] if text else []


def validate_path_safety(policy: PolicyConfig, path: str) -> list[dict[str, Any]]:
    """Check one candidate against allowed roots, `.git` internals and symlink escapes."""

    logical = expand_path(path)
    real = os.path.realpath(logical)
    if has_git_component(logical) or has_git_component(real):
        return [blocker("PATH_IN_GIT_META", "paths inside .git internals are never touched.", path=logical)]
    real_roots = set(policy.allowed_roots) | {os.path.realpath(root) for root in policy.allowed_roots}
    if is_within_any(real, real_roots):
        return []
    if is_within_any(logical, policy.allowed_roots):
        return [
            blocker(
                "PATH_SYMLINK_ESCAPE",
                "path resolves through a symlink to a location outside the allowed roots.",
                path=logical,
                real_path=real,
            )
        ]
    return [blocker("PATH_OUTSIDE_ALLOWED_ROOT", "path is outside the allowed roots.", path=logical)]


def drive_root_for(policy: PolicyConfig, path: str) -> str | None:
    logical = expand_path(path)
    external = policy.external_root
    if not is_within(logical, external) or os.path.normpath(logical) == os.path.normpath(external):
        return None
    first = os.path.relpath(logical, external).split(os.sep)[0]
    return os.path.join(external, first)


def run_drive_preflight(policy: PolicyConfig, path: str) -> dict[str, Any]:
    """Check that the external drive holding `path` is mounted, writable and has room."""

    report: dict[str, Any] = {
        "path": expand_path(path),
        "drive_root": None,
        "writable_probe_path": None,
        "mounted": False,
        "writable": False,
        "free_bytes": None,
        "min_free_bytes": policy.min_free_bytes,
        "free_ok": False,
        "errors": [],
    }
    drive_root = drive_root_for(policy, path)
    if drive_root is None:
        report["errors"].append(blocker("NOT_EXTERNAL_DRIVE_PATH", "path is not under the external drive root."))
        report["ok"] = False
        return report
    report["drive_root"] = drive_root
    if not os.path.isdir(drive_root):
        report["errors"].append(blocker("DRIVE_NOT_MOUNTED", f"drive is not mounted: {drive_root}"))
        report["ok"] = False
        return report
    report["mounted"] = True

    probe = os.path.join(drive_root, f".opsgate_write_probe_{uuid.uuid4().hex[:8]}")
    report["writable_probe_path"] = probe
    try:
        with open(probe, "w", encoding="utf-8") as handle:
            handle.write("probe")
        os.remove(probe)
        report["writable"] = True
    except OSError as exc:
        report["errors"].append(blocker("DRIVE_NOT_WRITABLE", f"drive is not writable: {exc.strerror or exc}"))

    try:
        free_bytes = shutil.disk_usage(drive_root).free
    except OSError as exc:
        report["errors"].append(
            blocker("DRIVE_FREE_SPACE_CHECK_FAILED", f"free space check failed: {exc.strerror or exc}")
        )
    else:
        report["free_bytes"] = int(free_bytes)
        report["free_ok"] = free_bytes >= policy.min_free_bytes
        if not report["free_ok"]:
            report["errors"].append(
                blocker(
                    "DRIVE_FREE_SPACE_LOW",
                    f"free space {free_bytes} bytes is below {policy.min_free_bytes} bytes.",
                )
            )
    report["ok"] = not report["errors"]
    return report


def resolve_repository(base: str) -> dict[str, Any]:
    if not base or not os.path.isdir(base):
        return {"ok": False, "error": "not_git_repo", "repo_root": None}
    result = run_command(["git", "-C", base, "rev-parse", "--show-toplevel"], timeout=GIT_TIMEOUT_SECONDS)
    top = result["stdout"].strip()
    if not result["ok"] or not top:
        return {"ok": False, "error": "not_git_repo", "repo_root": None}
    return {"ok": True, "error": None, "repo_root": os.path.abspath(top)}


def sha256_file(path: str, max_bytes: int) -> str | None:
    try:
        if os.path.getsize(path) > max_bytes:
            return None
    except OSError:
        return None
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def safe_move(src: str, dst: str) -> None:
    os.makedirs(os.path.dirname(dst), exist_ok=True)
    try:
        os.rename(src, dst)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        shutil.move(src, dst)


class FileControlCapability(Capability):
    """Moves, renames, trash/restore, drive preflight and gated git operations."""

    name = "file"
    domain = "file"
    actions = {
        "list_files": ("list", "ls"),
        "compute_plan": ("plan", "preview"),
        "move": ("mv",),
        "rename": ("ren",),
        "archive": (),
        "trash": ("delete", "rm", "remove"),
        "restore": ("untrash",),
        "drive_preflight_check": ("preflight", "drive_preflight"),
        "git_status": (),
        "git_diff": (),
        "git_mv": (),
        "git_add": (),
        "git_commit": (),
        "git_push": (),
    }
    mutating_actions = frozenset(
        {"move", "rename", "archive", "trash", "restore", "git_mv", "git_add", "git_commit", "git_push"}
    )

    def build_plan(
        self,
        action: str,
        payload: dict[str, Any],
        requester: str,
        context: dict[str, Any],
        policy: PolicyConfig,
    ) -> Result[Plan]:
        if action == "compute_plan":
            return self._preview_plan(payload, requester, context, policy)
        if is_git_action(action):
            return self._git_plan(action, payload, requester, policy)
        return self._local_plan(action, payload, requester, policy)

    def _preview_plan(
        self,
        payload: dict[str, Any],
        requester: str,
        context: dict[str, Any],
        policy: PolicyConfig,
    ) -> Result[Plan]:
        inner_action = self.canonical_action(text_field(payload, "intent_action", "preview_action"))
        if inner_action is None or inner_action == "compute_plan":
            return Result.failure("UNSUPPORTED_ACTION", "compute_plan requires a supported intent_action.")
        inner = self.plan(inner_action, payload, requester, context, policy)
        if not inner.ok:
            return inner
        preview: Plan = inner.value  # type: ignore[assignment]
        return Result.success(
            Plan(
                capability=self.name,
                action="compute_plan",
                command_kind="file",
                requested_by=requester,
                payload=preview.payload,
                source_candidates=preview.source_candidates,
                target_path=preview.target_path,
                risk_tier=preview.risk_tier,
                mutating=False,
                exact_paths=preview.exact_paths,
                blockers=preview.blockers,
                warnings=preview.warnings,
                plan_summary=f"preview of {preview.action}: {preview.plan_summary}",
                details={"preview": preview.to_dict()},
            )
        )

    def _expand_sources(self, payload: dict[str, Any], base: str | None) -> tuple[list[str], list[dict[str, Any]]]:
        patterns = _as_list(payload.get("sources")) or _as_list(payload.get("source")) or _as_list(payload.get("path"))
        found: list[str] = []
        blockers: list[dict[str, Any]] = []
        for pattern in patterns:
            resolved = _resolve(pattern, base)
            if GLOB_CHARS & set(pattern):
                matches = sorted(glob.glob(resolved))
                if not matches:
                    blockers.append(blocker("SOURCE_NOT_FOUND", "no files match the pattern.", path=resolved))
                found.extend(os.path.abspath(match) for match in matches)
                continue
            if not os.path.lexists(resolved):
                blockers.append(blocker("SOURCE_NOT_FOUND", "source path does not exist.", path=resolved))
            found.append(resolved)
        deduped = list(dict.fromkeys(found))
        return deduped, blockers

    def _local_plan(self, action: str, payload: dict[str, Any], requester: str, policy: PolicyConfig) -> Result[Plan]:
        base = text_field(payload, "cwd") or None
        sources, blockers = self._expand_sources(payload, base)
        target_text = text_field(payload, "target", "target_path", "destination", "dest")
        target = _resolve(target_text, base) if target_text else None
        warnings: list[str] = []
        operations: list[dict[str, Any]] = []
        rollback: list[str] = []
        normalized = dict(payload)
        normalized["sources"] = sources
        normalized.pop("source", None)
        normalized.pop("path", None)
        if target is not None:
            normalized["target"] = target
        details: dict[str, Any] = {}
        mutating = action in self.mutating_actions

        if action in {"list_files", "drive_preflight_check"} and not sources and target is None:
            blockers.append(blocker("SOURCE_NOT_FOUND", "a path is required."))

        if action in {"move", "archive"}:
            if target is None:
                blockers.append(blocker("TARGET_REQUIRED", f"{action} requires a target directory or path."))
            else:
                into_dir = bool(
                    payload.get("into_dir")
                    or action == "archive"
                    or len(sources) > 1
                    or os.path.isdir(target)
                    or target_text.endswith(("/", os.sep))
                )
                normalized["into_dir"] = into_dir
                for src in sources:
                    dst = os.path.join(target, os.path.basename(src)) if into_dir else target
                    operations.append({"kind": action, "src": src, "dst": dst})
        elif action == "rename":
            new_name = text_field(payload, "new_name", "name")
            if len(sources) != 1 or not new_name or os.sep in new_name or new_name in {".", ".."}:
                blockers.append(
                    blocker("RENAME_INPUT_REQUIRED", "rename requires exactly one source and a plain new_name.")
                )
            else:
                dst = os.path.join(os.path.dirname(sources[0]), new_name)
                target = dst
                normalized["target"] = dst
                operations.append({"kind": "rename", "src": sources[0], "dst": dst})
        elif action == "trash":
            session = text_field(payload, "trash_session")
            if not session:
                session = f"{_now().strftime('%Y%m%dT%H%M%SZ')}_{uuid.uuid4().hex[:8]}"
                normalized["trash_session"] = session
            session_dir = os.path.join(policy.trash_root, session)
            target = session_dir
            for index, src in enumerate(sources):
                dst = os.path.join(session_dir, f"{index:03d}_{os.path.basename(src)}")
                operations.append({"kind": "trash", "src": src, "dst": dst})
            details["trash_session_dir"] = session_dir
        elif action == "restore":
            operations, restore_blockers = self._restore_operations(sources, target, policy)
            blockers.extend(restore_blockers)
            if operations and target is None:
                target = operations[0]["dst"]

        for op in operations:
            rollback.append(f"mv {_quote(op['dst'])} {_quote(op['src'])}")
            if os.path.lexists(op["dst"]):
                blockers.append(blocker("DESTINATION_EXISTS", "destination already exists.", path=op["dst"]))

        checked_paths = list(sources)
        if target is not None and action != "trash":
            checked_paths.append(target)
        for path in checked_paths:
            if action == "restore" and is_within(path, policy.trash_root):
                continue
            blockers.extend(validate_path_safety(policy, path))

        risk_tier = classify_risk_tier(policy, action, checked_paths)
        if risk_tier == HIGH_PRECHECK or action == "drive_preflight_check":
            probe_path = target or (sources[0] if sources else "")
            preflight = run_drive_preflight(policy, probe_path)
            details["preflight"] = preflight
            blockers.extend(preflight["errors"])

        if action == "list_files":
            details["entries_preview"] = min(len(sources), MAX_LIST_ENTRIES)
        if mutating and not operations and not blockers:
            warnings.append("no matching files; nothing to do.")

        summary = self._summary(action, sources, target)
        return Result.success(
            Plan(
                capability=self.name,
                action=action,
                command_kind="file",
                requested_by=requester,
                payload=normalized,
                source_candidates=tuple(sources),
                target_path=target,
                risk_tier=risk_tier,
                mutating=mutating,
                required_flags=tuple(required_flags_for_plan(action, risk_tier, mutating)),
                exact_paths=tuple(dict.fromkeys([*sources, *[op["dst"] for op in operations]])),
                operations=tuple(operations),
                rollback_instructions=tuple(rollback),
                blockers=tuple(blockers),
                warnings=tuple(warnings),
                plan_summary=summary,
                details=details,
            )
        )

    def _restore_operations(
        self,
        sources: list[str],
        target: str | None,
        policy: PolicyConfig,
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        operations: list[dict[str, Any]] = []
        blockers: list[dict[str, Any]] = []
        for src in sources:
            if not is_within(src, policy.trash_root):
                blockers.append(blocker("RESTORE_SOURCE_INVALID", "restore source must be inside the trash.", path=src))
                continue
            original = target
            if original is None:
                manifest = Path(src).parent / "manifest.json"
                if manifest.exists():
                    try:
                        document = json.loads(manifest.read_text(encoding="utf-8"))
                    except (OSError, json.JSONDecodeError) as exc:
                        blockers.append(
                            blocker("RESTORE_SOURCE_INVALID", f"trash manifest unreadable: {exc}", path=src)
                        )
                        continue
                    items = document.get("items", []) if isinstance(document, dict) else []
                    original = next(
                        (item.get("src") for item in items if isinstance(item, dict) and item.get("dst") == src),
                        None,
                    )
            if not original:
                blockers.append(
                    blocker("RESTORE_SOURCE_INVALID", "no original location recorded for this item.", path=src)
                )
                continue
            operations.append({"kind": "restore", "src": src, "dst": original})
        if not sources:
            blockers.append(blocker("RESTORE_SOURCE_INVALID", "restore requires a trashed source path."))
        return operations, blockers

    def _summary(self, action: str, sources: list[str], target: str | None) -> str:
        count = len(sources)
        noun = "file" if count == 1 else "files"
        if target:
            return f"{action} {count} {noun} -> {target}"
        return f"{action} {count} {noun}"

    def _git_plan(self, action: str, payload: dict[str, Any], requester: str, policy: PolicyConfig) -> Result[Plan]:
        base_text = text_field(payload, "repo", "cwd", "repo_path")
        if not base_text:
            first = (_as_list(payload.get("sources")) or _as_list(payload.get("source")) or [""])[0]
            base_text = os.path.dirname(_resolve(first)) if first else ""
        base = _resolve(base_text) if base_text else ""
        repo = resolve_repository(base)
        if not repo["ok"]:
            return Result.failure("GIT_REPO_INVALID", "not_git_repo", path=base or None)
        repo_root = repo["repo_root"]
        mutating = action in self.mutating_actions
        real_git_roots = set(policy.git_allowed_roots) | {os.path.realpath(r) for r in policy.git_allowed_roots}
        if mutating and not is_within_any(repo_root, real_git_roots):
            return Result.failure("GIT_REPO_INVALID", "repo_outside_git_allowed_roots", repo_root=repo_root)

        blockers: list[dict[str, Any]] = []
        blockers.extend(validate_path_safety(policy, repo_root))
        normalized = dict(payload)
        normalized["repo"] = repo_root
        operations: list[dict[str, Any]] = []
        rollback: list[str] = []
        paths: list[str] = []
        git = f"git -C {_quote(repo_root)}"

        def _repo_path(value: str) -> str | None:
            resolved = _resolve(value, repo_root)
            real_repo = os.path.realpath(repo_root)
            if has_git_component(resolved) or not (
                is_within(resolved, repo_root) or is_within(os.path.realpath(resolved), real_repo)
            ):
                blockers.append(blocker("GIT_PATH_INVALID", "path must be inside the repository work tree.", path=resolved))
                return None
            return resolved

        if action == "git_mv":
            src_text = text_field(payload, "source", "src")
            dst_text = text_field(payload, "target", "dst", "destination")
            if not src_text or not dst_text:
                blockers.append(blocker("GIT_MV_INPUT_REQUIRED", "git_mv requires source and target."))
            else:
                src = _repo_path(src_text)
                dst = _repo_path(dst_text)
                if src and dst:
                    if not os.path.lexists(src):
                        blockers.append(blocker("SOURCE_NOT_FOUND", "source path does not exist.", path=src))
                    paths.extend([src, dst])
                    normalized["source"], normalized["target"] = src, dst
                    operations.append({"kind": "git_mv", "src": src, "dst": dst})
                    rollback.append(f"{git} mv {_quote(dst)} {_quote(src)}")
        elif action == "git_add":
            requested = _as_list(payload.get("paths")) or _as_list(payload.get("sources")) or _as_list(payload.get("path"))
            if not requested:
                blockers.append(blocker("GIT_ADD_PATH_REQUIRED", "git_add requires at least one path."))
            resolved_paths = [p for p in (_repo_path(item) for item in requested) if p]
            paths.extend(resolved_paths)
            normalized["paths"] = resolved_paths
            if resolved_paths:
                operations.append({"kind": "git_add", "paths": resolved_paths})
                rollback.append(f"{git} reset -- " + " ".join(_quote(p) for p in resolved_paths))
        elif action == "git_commit":
            message = text_field(payload, "message", "commit_message")
            if not message:
                blockers.append(blocker("GIT_COMMIT_MESSAGE_REQUIRED", "git_commit requires a message."))
            else:
                operations.append({"kind": "git_commit", "message": message})
                rollback.append(f"{git} reset --soft HEAD~1")
        elif action == "git_push":
            remote = text_field(payload, "remote") or "origin"
            branch = text_field(payload, "branch")
            normalized["remote"] = remote
            operations.append({"kind": "git_push", "remote": remote, "branch": branch or None})
            rollback.append(
                f"{git} push --force-with-lease {remote} <previous_sha>:{branch or '<branch>'}  # manual, remote history"
            )
        else:
            operations.append({"kind": action})

        for path in paths:
            blockers.extend(validate_path_safety(policy, path))

        summary = f"{action} in {repo_root}"
        if paths:
            summary = f"{action} {len(paths)} path(s) in {repo_root}"
        return Result.success(
            Plan(
                capability=self.name,
                action=action,
                command_kind="file",
                requested_by=requester,
                payload=normalized,
                source_candidates=tuple(paths),
                target_path=repo_root,
                risk_tier=GIT_AWARE,
                mutating=mutating,
                required_flags=tuple(required_flags_for_plan(action, GIT_AWARE, mutating)),
                exact_paths=tuple(paths),
                operations=tuple(operations),
                rollback_instructions=tuple(rollback),
                blockers=tuple(blockers),
                plan_summary=summary,
                details={"repo_root": repo_root},
            )
        )

    def revalidate(self, plan: Plan, policy: PolicyConfig) -> list[dict[str, Any]]:
        problems: list[dict[str, Any]] = []
        for op in plan.operations:
            src = op.get("src")
            if src and not os.path.lexists(src):
                problems.append(blocker("PLAN_MISMATCH", "source path no longer exists.", path=src))
        if plan.risk_tier == HIGH_PRECHECK:
            probe = plan.target_path or (plan.source_candidates[0] if plan.source_candidates else "")
            preflight = run_drive_preflight(policy, probe)
            if not preflight["ok"]:
                problems.append(
                    blocker(
                        "DRIVE_PREFLIGHT_FAILED",
                        "external drive preflight failed at execution time.",
                        errors=[error["code"] for error in preflight["errors"]],
                    )
                )
        return problems

    def run(self, plan: Plan, policy: PolicyConfig) -> dict[str, Any]:
        if is_git_action(plan.action):
            return self._run_git(plan)
        if plan.action == "list_files":
            return self._run_list(plan)
        if plan.action == "drive_preflight_check":
            return {"ok": True, "executed_steps": ["drive preflight"], "preflight": plan.details.get("preflight")}
        if plan.action == "compute_plan":
            return {"ok": True, "executed_steps": [], "preview": plan.details.get("preview")}
        return self._run_moves(plan, policy)

    def _run_list(self, plan: Plan) -> dict[str, Any]:
        entries: list[dict[str, Any]] = []
        for path in plan.source_candidates:
            candidates = [path]
            if os.path.isdir(path):
                candidates = [os.path.join(path, name) for name in sorted(os.listdir(path))]
            for item in candidates:
                if len(entries) >= MAX_LIST_ENTRIES:
                    break
                try:
                    stat = os.stat(item)
                except OSError:
                    continue
                entries.append({"path": item, "is_dir": os.path.isdir(item), "size": stat.st_size})
        return {"ok": True, "executed_steps": [f"listed {len(entries)} entries"], "entries": entries}

    def _run_moves(self, plan: Plan, policy: PolicyConfig) -> dict[str, Any]:
        counts = {"moved": 0, "trashed": 0, "restored": 0, "hashed": 0}
        hashes: dict[str, str] = {}
        steps: list[str] = []
        manifest_items: list[dict[str, Any]] = []
        try:
            for op in plan.operations:
                src, dst = op["src"], op["dst"]
                if os.path.isfile(src):
                    digest = sha256_file(src, policy.hash_max_bytes)
                    if digest:
                        hashes[src] = digest
                        counts["hashed"] += 1
                safe_move(src, dst)
                if op["kind"] == "trash":
                    counts["trashed"] += 1
                    manifest_items.append({"src": src, "dst": dst, "sha256": hashes.get(src)})
                elif op["kind"] == "restore":
                    counts["restored"] += 1
                else:
                    counts["moved"] += 1
                steps.append(f"{op['kind']} {src} -> {dst}")
        except OSError as exc:
            return failed(
                "FILE_OPERATION_FAILED",
                f"{exc.__class__.__name__}: {exc}",
                executed_steps=steps,
                file_counts=counts,
                hashes=hashes,
                rollback_instructions=list(plan.rollback_instructions[: len(steps)]),
            )
        finally:
            if manifest_items:
                session_dir = plan.details.get("trash_session_dir") or os.path.dirname(manifest_items[0]["dst"])
                manifest = {
                    "created_at": _now().isoformat(),
                    "requested_by": plan.requested_by,
                    "items": manifest_items,
                }
                Path(session_dir, "manifest.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        return {
            "ok": True,
            "executed_steps": steps,
            "file_counts": counts,
            "hashes": hashes,
            "rollback_instructions": list(plan.rollback_instructions),
        }

    def _run_git(self, plan: Plan) -> dict[str, Any]:
        repo_root = str(plan.details.get("repo_root") or plan.target_path)
        steps: list[str] = []
        if plan.action == "git_status":
            result = run_command(["git", "-C", repo_root, "status", "--short", "--branch"], timeout=GIT_TIMEOUT_SECONDS)
            if not result["ok"]:
                return failed("GIT_STATUS_FAILED", clamp_preview(result["error"] or ""))
            return {"ok": True, "executed_steps": ["git status"], "status": clamp_preview(result["stdout"], 4000)}
        if plan.action == "git_diff":
            result = run_command(["git", "-C", repo_root, "diff", "--stat"], timeout=GIT_TIMEOUT_SECONDS)
            if not result["ok"]:
                return failed("GIT_DIFF_FAILED", clamp_preview(result["error"] or ""))
            return {"ok": True, "executed_steps": ["git diff --stat"], "diff": clamp_preview(result["stdout"], 4000)}

        for op in plan.operations:
            kind = op["kind"]
            if kind == "git_mv":
                args = ["git", "-C", repo_root, "mv", op["src"], op["dst"]]
                timeout = GIT_TIMEOUT_SECONDS
            elif kind == "git_add":
                args = ["git", "-C", repo_root, "add", "--", *op["paths"]]
                timeout = GIT_TIMEOUT_SECONDS
            elif kind == "git_commit":
                args = ["git", "-C", repo_root, "commit", "-m", op["message"]]
                timeout = GIT_TIMEOUT_SECONDS
            elif kind == "git_push":
                args = ["git", "-C", repo_root, "push", op["remote"]]
                if op.get("branch"):
                    args.append(op["branch"])
                timeout = GIT_PUSH_TIMEOUT_SECONDS
            else:
                return failed("UNSUPPORTED_ACTION", f"unknown git operation {kind}", executed_steps=steps)
            result = run_command(args, timeout=timeout)
            if not result["ok"]:
                return failed(
                    f"{kind.upper()}_FAILED",
                    clamp_preview(result["error"] or ""),
                    executed_steps=steps,
                )
            steps.append(" ".join(args[3:]))
        return {"ok": True, "executed_steps": steps, "rollback_instructions": list(plan.rollback_instructions)}
