from __future__ import annotations

import json
import os
import shutil
import subprocess
from pathlib import Path

import pytest

from opsgate.capabilities.file_control import FileControlCapability, run_drive_preflight
from opsgate.plans import compute_plan_hash
from opsgate.policy import GIT_AWARE, HIGH, HIGH_PRECHECK, MEDIUM, load_policy


def _write(path: Path, text: str = "data") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _policy(tmp_path: Path, **overrides):  # type: ignore[no-untyped-def]
    home = tmp_path / "home"
    document = {
        "allowed_roots": [str(home), str(tmp_path / "Volumes")],
        "medium_roots": [str(home / "medium")],
        "high_roots": [],
        "external_root": str(tmp_path / "Volumes"),
        "trash_root": str(home / ".trash"),
        "git_allowed_roots": [str(home / "Projects")],
    }
    document.update(overrides)
    return load_policy(None, overrides=document, env={})


def _plan(tmp_path: Path, action: str, payload: dict, **overrides):  # type: ignore[no-untyped-def]
    policy = _policy(tmp_path, **overrides)
    built = FileControlCapability().plan(action, payload, "alice", {}, policy)
    assert built.ok, built.error
    return built.value, policy


def _codes(plan) -> list[str]:  # type: ignore[no-untyped-def]
    return [item["code"] for item in plan.blockers]


def test_medium_move_needs_no_flags_and_executes(tmp_path: Path) -> None:
    src = _write(tmp_path / "home" / "medium" / "report.txt")
    dest = tmp_path / "home" / "medium" / "sorted"
    dest.mkdir(parents=True)
    plan, policy = _plan(tmp_path, "move", {"source": str(src), "target": str(dest)})
    assert plan.risk_tier == MEDIUM
    assert plan.requires_approval is False
    assert plan.required_flags == ()
    assert plan.operations[0]["dst"] == str(dest / "report.txt")

    result = FileControlCapability().execute(plan, policy)
    assert result["ok"] is True
    assert result["file_counts"]["moved"] == 1
    assert str(src) in result["hashes"]
    assert (dest / "report.txt").exists()
    assert not src.exists()


def test_move_outside_medium_roots_is_high(tmp_path: Path) -> None:
    src = _write(tmp_path / "home" / "medium" / "a.txt")
    plan, _ = _plan(tmp_path, "mv", {"sources": [str(src)], "target": str(tmp_path / "home" / "docs") + "/"})
    assert plan.action == "move"
    assert plan.risk_tier == HIGH
    assert plan.required_flags == ("force",)
    assert plan.operations[0]["dst"] == str(tmp_path / "home" / "docs" / "a.txt")


def test_replanning_yields_same_hash(tmp_path: Path) -> None:
    src = _write(tmp_path / "home" / "medium" / "a.txt")
    target = tmp_path / "home" / "docs"
    target.mkdir(parents=True)
    plan, policy = _plan(tmp_path, "move", {"source": str(src), "target": str(target)})
    again = FileControlCapability().plan("move", dict(plan.payload), "alice", {}, policy)
    assert compute_plan_hash(again.value) == compute_plan_hash(plan)  # type: ignore[arg-type]

    trash, _ = _plan(tmp_path, "trash", {"path": str(src)})
    again_trash = FileControlCapability().plan("trash", dict(trash.payload), "alice", {}, policy)
    assert compute_plan_hash(again_trash.value) == compute_plan_hash(trash)  # type: ignore[arg-type]


def test_trash_and_restore_round_trip(tmp_path: Path) -> None:
    src = _write(tmp_path / "home" / "medium" / "old.log", "bye")
    plan, policy = _plan(tmp_path, "rm", {"path": str(src)})
    assert plan.action == "trash"
    assert plan.risk_tier == HIGH
    assert plan.required_flags == ("force",)
    capability = FileControlCapability()
    result = capability.execute(plan, policy)
    assert result["ok"] is True
    assert result["file_counts"]["trashed"] == 1
    trashed = plan.operations[0]["dst"]
    assert os.path.exists(trashed)
    manifest = json.loads((Path(trashed).parent / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["items"][0]["src"] == str(src)

    restore, _ = _plan(tmp_path, "restore", {"source": trashed})
    assert restore.operations[0]["dst"] == str(src)
    assert capability.execute(restore, policy)["file_counts"]["restored"] == 1
    assert src.read_text(encoding="utf-8") == "bye"


def test_path_safety_blockers(tmp_path: Path) -> None:
    outside = _write(tmp_path / "elsewhere" / "x.txt")
    plan, _ = _plan(tmp_path, "trash", {"path": str(outside)})
    assert "PATH_OUTSIDE_ALLOWED_ROOT" in _codes(plan)

    git_meta = _write(tmp_path / "home" / "repo" / ".git" / "config")
    plan, _ = _plan(tmp_path, "trash", {"path": str(git_meta)})
    assert "PATH_IN_GIT_META" in _codes(plan)

    link = tmp_path / "home" / "medium" / "escape"
    link.parent.mkdir(parents=True, exist_ok=True)
    link.symlink_to(outside.parent, target_is_directory=True)
    plan, _ = _plan(tmp_path, "trash", {"path": str(link / "x.txt")})
    assert "PATH_SYMLINK_ESCAPE" in _codes(plan)


def test_existing_destination_and_missing_source_block(tmp_path: Path) -> None:
    src = _write(tmp_path / "home" / "medium" / "a.txt")
    _write(tmp_path / "home" / "medium" / "b.txt")
    plan, policy = _plan(tmp_path, "rename", {"source": str(src), "new_name": "b.txt"})
    assert "DESTINATION_EXISTS" in _codes(plan)
    result = FileControlCapability().execute(plan, policy)
    assert result["ok"] is False
    assert result["error_code"] == "DESTINATION_EXISTS"
    assert src.exists()

    missing, _ = _plan(tmp_path, "trash", {"sources": [str(tmp_path / "home" / "medium" / "*.nope")]})
    assert "SOURCE_NOT_FOUND" in _codes(missing)


def test_revalidate_reports_vanished_source(tmp_path: Path) -> None:
    src = _write(tmp_path / "home" / "medium" / "a.txt")
    plan, policy = _plan(tmp_path, "trash", {"path": str(src)})
    assert FileControlCapability().revalidate(plan, policy) == []
    src.unlink()
    codes = [item["code"] for item in FileControlCapability().revalidate(plan, policy)]
    assert codes == ["PLAN_MISMATCH"]


def test_external_drive_preflight(tmp_path: Path) -> None:
    src = _write(tmp_path / "home" / "medium" / "movie.mp4")
    plan, _ = _plan(tmp_path, "move", {"source": str(src), "target": str(tmp_path / "Volumes" / "USB") + "/"})
    assert plan.risk_tier == HIGH_PRECHECK
    assert plan.required_flags == ("force",)
    assert "DRIVE_NOT_MOUNTED" in _codes(plan)
    assert plan.details["preflight"]["mounted"] is False

    (tmp_path / "Volumes" / "USB").mkdir(parents=True)
    policy = _policy(tmp_path)
    report = run_drive_preflight(policy, str(tmp_path / "Volumes" / "USB" / "movie.mp4"))
    assert report["mounted"] is True
    assert report["writable"] is True
    assert report["ok"] is (report["free_bytes"] >= policy.min_free_bytes)

    greedy = _policy(tmp_path, min_free_bytes=10**18)
    report = run_drive_preflight(greedy, str(tmp_path / "Volumes" / "USB" / "movie.mp4"))
    assert report["free_ok"] is False
    assert "DRIVE_FREE_SPACE_LOW" in [item["code"] for item in report["errors"]]
    assert not list((tmp_path / "Volumes" / "USB").glob(".opsgate_write_probe_*"))


def test_not_external_path_preflight(tmp_path: Path) -> None:
    report = run_drive_preflight(_policy(tmp_path), str(tmp_path / "home" / "medium"))
    assert report["ok"] is False
    assert report["errors"][0]["code"] == "NOT_EXTERNAL_DRIVE_PATH"


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def _init_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init", "-q", str(path)], check=True, capture_output=True)
    return path


@requires_git
def test_git_status_runs_without_approval(tmp_path: Path) -> None:
    repo = _init_repo(tmp_path / "home" / "Projects" / "demo")
    _write(repo / "notes.md")
    plan, policy = _plan(tmp_path, "git_status", {"repo": str(repo)})
    assert plan.risk_tier == GIT_AWARE
    assert plan.requires_approval is False
    result = FileControlCapability().execute(plan, policy)
    assert result["ok"] is True
    assert "notes.md" in result["status"]


@requires_git
def test_git_push_requires_force_and_push(tmp_path: Path) -> None:
    repo = _init_repo(tmp_path / "home" / "Projects" / "demo")
    plan, _ = _plan(tmp_path, "git_push", {"repo": str(repo), "branch": "main"})
    assert plan.risk_tier == GIT_AWARE
    assert plan.required_flags == ("force", "push")
    assert plan.operations[0] == {"kind": "git_push", "remote": "origin", "branch": "main"}


@requires_git
def test_git_add_checks_repo_location_and_paths(tmp_path: Path) -> None:
    outside = _init_repo(tmp_path / "home" / "scratch")
    rejected = FileControlCapability().plan("git_add", {"repo": str(outside), "paths": ["a"]}, "alice", {}, _policy(tmp_path))
    assert rejected.error.code == "GIT_REPO_INVALID"
    assert rejected.error.message == "repo_outside_git_allowed_roots"

    repo = _init_repo(tmp_path / "home" / "Projects" / "demo")
    plan, _ = _plan(tmp_path, "git_add", {"repo": str(repo), "paths": ["a.txt", "../../escape.txt", ".git/HEAD"]})
    assert plan.payload["paths"] == [str(repo / "a.txt")]
    assert _codes(plan).count("GIT_PATH_INVALID") == 2
    assert plan.required_flags == ("force",)


def test_non_repo_is_rejected(tmp_path: Path) -> None:
    folder = tmp_path / "home" / "Projects" / "plain"
    folder.mkdir(parents=True)
    result = FileControlCapability().plan("git_status", {"repo": str(folder / "missing")}, "alice", {}, _policy(tmp_path))
    assert result.error.code == "GIT_REPO_INVALID"
    assert result.error.message == "not_git_repo"


def test_corrupt_trash_manifest_blocks_restore(tmp_path: Path) -> None:
    src = _write(tmp_path / "home" / "medium" / "notes.txt")
    plan, policy = _plan(tmp_path, "trash", {"path": str(src)})
    assert FileControlCapability().execute(plan, policy)["ok"] is True
    trashed = plan.operations[0]["dst"]
    (Path(trashed).parent / "manifest.json").write_text("{truncated", encoding="utf-8")

    restore, _ = _plan(tmp_path, "restore", {"source": trashed})
    assert _codes(restore) == ["RESTORE_SOURCE_INVALID"]
    assert restore.operations == ()
