from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Any

import pytest
import yaml

from opsgate.capabilities.exec import ExecCapability
from opsgate.service import OpsGateService


class _RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    def notify(self, text: str, *, request_id=None, requested_by=None, context=None) -> None:  # type: ignore[no-untyped-def]
        self.messages.append({"text": text, "request_id": request_id, "requested_by": requested_by})


def _write(path: Path, text: str = "data") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _write_policy(tmp_path: Path, **overrides: Any) -> None:
    root = tmp_path / "files"
    document: dict[str, Any] = {
        "allowed_roots": [str(root)],
        "medium_roots": [str(root / "medium")],
        "external_root": str(tmp_path / "Volumes"),
        "trash_root": str(root / ".trash"),
        "git_allowed_roots": [str(root / "Projects")],
    }
    document.update(overrides)
    path = tmp_path / "home" / "policy.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(document), encoding="utf-8")


def _service(tmp_path: Path, monkeypatch, **overrides: Any) -> tuple[OpsGateService, _RecordingNotifier]:  # type: ignore[no-untyped-def]
    monkeypatch.delenv("OPSGATE_POLICY", raising=False)
    monkeypatch.delenv("OPSGATE_IDENTITY_MODE", raising=False)
    _write_policy(tmp_path, **overrides)
    notifier = _RecordingNotifier()
    return OpsGateService.create(tmp_path / "home", notifier=notifier), notifier


def _plan(service: OpsGateService, capability: str, action: str, payload: dict, **kwargs: Any) -> dict[str, Any]:
    envelope = service.enqueue(
        capability=capability,
        action=action,
        requested_by=kwargs.pop("requested_by", "alice"),
        payload=payload,
        **kwargs,
    )
    service.run_worker()
    return service.result_for(envelope["request_id"])


def _event_types(service: OpsGateService) -> list[str]:
    return [event["event_type"] for event in service.audit.iter_events()]


def test_read_only_plan_executes_inline(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, notifier = _service(tmp_path, monkeypatch)
    row = _plan(service, "exec", "run", {"command": "pwd", "cwd": str(tmp_path)})
    assert row["ok"] is True
    assert row["token_id"] is None
    assert row["requires_approval"] is False
    assert str(tmp_path) in row["stdout"]
    assert row["plan_summary"].startswith("run shell command")
    assert _event_types(service) == ["auto_execute_decision", "execution_result"]
    assert notifier.messages[0]["text"].startswith("[PLAN] exec:run")
    assert notifier.messages[-1]["text"].startswith("[OK] exec:run")
    assert service.approvals.list_pending() == []


def test_trash_requires_force_and_consumes_once(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, notifier = _service(tmp_path, monkeypatch)
    victim = _write(tmp_path / "files" / "medium" / "old.txt")
    planned = _plan(service, "file", "trash", {"path": str(victim)})
    assert planned["ok"] is True
    assert planned["requires_approval"] is True
    assert planned["required_flags"] == ["force"]
    token_id = planned["token_id"]
    assert token_id.startswith("apv_")
    assert victim.exists()
    assert f"- token: {token_id}" in notifier.messages[-1]["text"]

    missing_flag = service.approve(token_id, requested_by="alice")
    assert missing_flag["ok"] is False
    assert missing_flag["error_code"] == "APPROVAL_FLAGS_REQUIRED"
    assert missing_flag["missing_flags"] == ["force"]
    assert service.approvals.read_any(token_id)["status"] == "pending"

    approved = service.approve(token_id, requested_by="alice", approval_flags=["--force"])
    assert approved["ok"] is True
    assert approved["token_id"] == token_id
    assert approved["file_counts"]["trashed"] == 1
    assert not victim.exists()
    assert service.approvals.read_any(token_id)["status"] == "consumed"

    replay = service.approve(token_id, requested_by="alice", approval_flags=["force"])
    assert replay["ok"] is False
    assert replay["error_code"] == "TOKEN_CONSUMED"
    assert _event_types(service).count("execution_result") == 1


def test_identity_binding_is_enforced(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, _ = _service(tmp_path, monkeypatch)
    victim = _write(tmp_path / "files" / "medium" / "a.txt")
    planned = _plan(
        service,
        "file",
        "trash",
        {"path": str(victim)},
        requested_by="ignored",
        context={"provider": "chat", "user_id": "u-42"},
        actor_bot_id="bot-a",
    )
    token_id = planned["token_id"]
    assert planned["requested_by"] == "u-42"

    stranger = service.approve(token_id, requested_by="u-99", approval_flags=["force"], actor_bot_id="bot-a")
    assert stranger["error_code"] == "REQUESTER_MISMATCH"
    other_bot = service.approve(token_id, requested_by="u-42", approval_flags=["force"], actor_bot_id="bot-b")
    assert other_bot["error_code"] == "BOT_MISMATCH"
    owner = service.approve(
        token_id,
        requested_by="someone",
        approval_flags=["force"],
        context={"user_id": "u-42", "bot_id": "bot-a"},
    )
    assert owner["ok"] is True


def test_missing_source_at_execute_leaves_token_pending(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, _ = _service(tmp_path, monkeypatch)
    victim = _write(tmp_path / "files" / "medium" / "a.txt")
    token_id = _plan(service, "file", "trash", {"path": str(victim)})["token_id"]
    victim.unlink()
    result = service.approve(token_id, requested_by="alice", approval_flags=["force"])
    assert result["ok"] is False
    assert result["error_code"] == "PLAN_MISMATCH"
    assert service.approvals.read_any(token_id)["status"] == "pending"
    assert "plan_drift_detected" in _event_types(service)


def test_policy_change_after_planning_is_drift(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, _ = _service(tmp_path, monkeypatch)
    src = _write(tmp_path / "files" / "docs" / "a.txt")
    target = tmp_path / "files" / "docs" / "archive"
    target.mkdir(parents=True)
    planned = _plan(service, "file", "move", {"source": str(src), "target": str(target)})
    assert planned["risk_tier"] == "HIGH"

    _write_policy(tmp_path, medium_roots=[str(tmp_path / "files" / "docs")])
    result = service.approve(planned["token_id"], requested_by="alice", approval_flags=["force"])
    assert result["error_code"] == "PLAN_MISMATCH"
    assert src.exists()
    drift = [e for e in service.audit.iter_events() if e["event_type"] == "plan_drift_detected"]
    assert drift and drift[0]["payload"]["expected_hash"] != drift[0]["payload"]["actual_hash"]


def test_deny_closes_token(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, notifier = _service(tmp_path, monkeypatch)
    victim = _write(tmp_path / "files" / "medium" / "a.txt")
    token_id = _plan(service, "file", "trash", {"path": str(victim)})["token_id"]

    denied = service.deny(token_id, requested_by="alice", reason="keep it")
    assert denied["ok"] is True
    assert denied["decision"] == "deny"
    assert notifier.messages[-1]["text"].startswith("[DENIED] file:trash")
    assert service.approvals.read_any(token_id)["deny_reason"] == "keep it"

    late = service.approve(token_id, requested_by="alice", approval_flags=["force"])
    assert late["error_code"] == "TOKEN_DENIED"
    assert victim.exists()


def test_grant_after_approval_bypasses_next_token(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, _ = _service(tmp_path, monkeypatch, approval_grant={"enabled": True})
    first = _write(tmp_path / "files" / "medium" / "one.txt")
    second = _write(tmp_path / "files" / "medium" / "two.txt")

    token_id = _plan(service, "file", "trash", {"path": str(first)})["token_id"]
    approved = service.approve(token_id, requested_by="alice", approval_flags=["force"])
    assert approved["ok"] is True
    grant = approved["approval_grant"]
    assert grant["requested_by"] == "alice"
    assert grant["source_token"] == token_id

    bypassed = _plan(service, "file", "trash", {"path": str(second)})
    assert bypassed["ok"] is True
    assert bypassed["token_id"] is None
    assert bypassed["requires_approval"] is False
    assert bypassed["approval_grant"]["grant_id"] == grant["grant_id"]
    assert not second.exists()
    assert "approval_grant_bypass" in _event_types(service)

    other = _write(tmp_path / "files" / "medium" / "three.txt")
    bob = _plan(service, "file", "trash", {"path": str(other)}, requested_by="bob")
    assert bob["token_id"] is not None


def test_grants_disabled_by_default(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, _ = _service(tmp_path, monkeypatch)
    victim = _write(tmp_path / "files" / "medium" / "a.txt")
    token_id = _plan(service, "file", "trash", {"path": str(victim)})["token_id"]
    approved = service.approve(token_id, requested_by="alice", approval_flags=["force"])
    assert "approval_grant" not in approved
    assert service.show_grant("alice")["active"] is False


def test_failures_become_rows(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, notifier = _service(tmp_path, monkeypatch)
    unknown = _plan(service, "teleport", "go", {})
    assert unknown["ok"] is False
    assert unknown["error_code"] == "UNSUPPORTED_ACTION"
    assert unknown["plan_summary"] is None
    assert unknown["executed_steps"] == []
    assert notifier.messages[-1]["text"].startswith("[FAILED]")

    envelope = service.enqueue(
        capability=None, action=None, command_kind="approval", phase="execute", requested_by="alice", payload={}
    )
    service.run_worker()
    assert service.result_for(envelope["request_id"])["error_code"] == "TOKEN_REQUIRED"

    def _boom(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        raise RuntimeError("connector exploded")

    monkeypatch.setattr(ExecCapability, "build_plan", _boom)
    crashed = _plan(service, "exec", "run", {"command": "pwd"})
    assert crashed["error_code"] == "INTERNAL_ERROR"
    assert crashed["error"] == "RuntimeError: connector exploded"
    assert _event_types(service).count("request_failed") == 3


def test_blocked_plan_fails_without_token(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, _ = _service(tmp_path, monkeypatch)
    row = _plan(service, "exec", "run", {"command": "pwd", "cwd": str(tmp_path / "missing")})
    assert row["ok"] is False
    assert row["error_code"] == "CWD_NOT_FOUND"
    assert row["token_id"] is None


def test_identity_guard_rejects_unknown_users(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, _ = _service(tmp_path, monkeypatch, identity_guard={"enabled": True, "allowed_user_ids": ["u-1"]})
    no_context = _plan(service, "exec", "run", {"command": "pwd"})
    assert no_context["error_code"] == "IDENTITY_CONTEXT_REQUIRED"
    outsider = _plan(service, "exec", "run", {"command": "pwd"}, context={"user_id": "u-2"})
    assert outsider["error_code"] == "IDENTITY_NOT_ALLOWED"
    insider = _plan(service, "exec", "run", {"command": "pwd"}, context={"user_id": "u-1"})
    assert insider["ok"] is True


def test_run_respects_max_items(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, _ = _service(tmp_path, monkeypatch)
    for _ in range(3):
        service.enqueue(capability="exec", action="run", requested_by="alice", payload={"command": "pwd"})
    first = service.run_worker(max_items=2)
    assert first["processed"] == 2 and first["ok"] == 2
    assert service.run_worker()["processed"] == 1
    assert service.queue.pending_count() == 0


def test_external_drive_plan_carries_preflight_blockers(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, notifier = _service(
        tmp_path,
        monkeypatch,
        allowed_roots=[str(tmp_path / "files"), str(tmp_path / "Volumes")],
    )
    movie = _write(tmp_path / "files" / "medium" / "movie.mp4")
    planned = _plan(service, "file", "move", {"source": str(movie), "target": str(tmp_path / "Volumes" / "USB") + "/"})
    assert planned["risk_tier"] == "HIGH_PRECHECK"
    assert planned["required_flags"] == ["force"]
    assert planned["token_id"] is not None
    assert "DRIVE_NOT_MOUNTED" in [item["code"] for item in planned["blockers"]]
    assert "- preflight: mounted=no" in notifier.messages[-1]["text"]


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_git_push_outside_allowlist_never_mints_token(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, _ = _service(tmp_path, monkeypatch)
    repo = tmp_path / "files" / "scratch"
    repo.mkdir(parents=True)
    subprocess.run(["git", "init", "-q", str(repo)], check=True, capture_output=True)
    row = _plan(service, "file", "git_push", {"repo": str(repo)})
    assert row["ok"] is False
    assert row["error_code"] == "GIT_REPO_INVALID"
    assert row["error"] == "repo_outside_git_allowed_roots"
    assert service.approvals.list_pending() == []


def test_any_user_any_bot_mode_accepts_other_approver(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, _ = _service(tmp_path, monkeypatch)
    victim = _write(tmp_path / "files" / "medium" / "a.txt")
    token_id = _plan(service, "file", "trash", {"path": str(victim)}, actor_bot_id="bot-a")["token_id"]

    strict = service.approve(token_id, requested_by="bob", approval_flags=["force"], actor_bot_id="bot-b")
    assert strict["error_code"] == "REQUESTER_MISMATCH"

    monkeypatch.setenv("OPSGATE_IDENTITY_MODE", "any_user_any_bot")
    relaxed = service.approve(token_id, requested_by="bob", approval_flags=["force"], actor_bot_id="bot-b")
    assert relaxed["ok"] is True
    assert not victim.exists()


def test_new_blocker_at_approval_keeps_token_pending(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, _ = _service(tmp_path, monkeypatch)
    src = _write(tmp_path / "files" / "docs" / "a.txt", "keep")
    planned = _plan(service, "file", "rename", {"source": str(src), "new_name": "b.txt"})
    token_id = planned["token_id"]
    assert planned["blockers"] == []

    squatter = _write(tmp_path / "files" / "docs" / "b.txt", "other")
    blocked = service.approve(token_id, requested_by="alice", approval_flags=["force"])
    assert blocked["ok"] is False
    assert blocked["error_code"] == "DESTINATION_EXISTS"
    assert service.approvals.read_any(token_id)["status"] == "pending"
    assert src.read_text(encoding="utf-8") == "keep"
    drift = [e for e in service.audit.iter_events() if e["event_type"] == "plan_drift_detected"]
    assert drift[-1]["payload"]["blockers"] == ["DESTINATION_EXISTS"]

    squatter.unlink()
    approved = service.approve(token_id, requested_by="alice", approval_flags=["force"])
    assert approved["ok"] is True
    assert approved["plan_summary"]
    assert (tmp_path / "files" / "docs" / "b.txt").read_text(encoding="utf-8") == "keep"


def test_failure_notification_redacts_secrets(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    service, notifier = _service(tmp_path, monkeypatch)

    def _leak(self, *args, **kwargs):  # type: ignore[no-untyped-def]
        raise RuntimeError("upstream refused key sk-abcdefghijklmnopqrstuvwx")

    monkeypatch.setattr(ExecCapability, "build_plan", _leak)
    row = _plan(service, "exec", "run", {"command": "pwd"})
    assert row["error_code"] == "INTERNAL_ERROR"
    text = notifier.messages[-1]["text"]
    assert text.startswith("[FAILED]")
    assert "sk-abcdefghijklmnopqrstuvwx" not in text
    assert "upstream refused key" in text
