from __future__ import annotations

import os
from pathlib import Path


def opsgate_home() -> Path:
    configured = os.environ.get("OPSGATE_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".opsgate"


def policy_path(base: Path) -> Path:
    configured = os.environ.get("OPSGATE_POLICY")
    if configured:
        return Path(configured).expanduser().resolve()
    return base / "policy.yaml"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    queue = base / "queue"
    approvals = base / "approvals"
    dirs = {
        "base": base,
        "queue": queue,
        "outbox": queue / "outbox",
        "processing": queue / "processing",
        "completed": queue / "completed",
        "approvals": approvals,
        "pending": approvals / "pending",
        "consumed": approvals / "consumed",
        "grants": approvals / "grants",
        "audit": base / "logs" / "audit",
        "notifications": base / "notifications",
        "state": base / "state",
    }
    for path in dirs.values():
        path.mkdir(parents=True, exist_ok=True)
    return dirs
