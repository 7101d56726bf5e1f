from __future__ import annotations

"""Small JSON-file repositories with atomic writes and rename-based transitions."""

import json
import os
import time
import uuid
from pathlib import Path
from typing import Any, Callable


def load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return default


def save_json(path: Path, value: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / f".{path.name}.{uuid.uuid4().hex[:8]}.tmp"
    payload = json.dumps(value, indent=2)
    for attempt in range(5):
        temp_path.write_text(payload, encoding="utf-8")
        try:
            temp_path.replace(path)
            return
        except PermissionError:
            if attempt == 4:
                temp_path.unlink(missing_ok=True)
                raise
            # On Windows, AV/indexers can briefly lock newly-written temp files.
            time.sleep(0.02 * (attempt + 1))


def append_jsonl(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8", newline="\n") as handle:
        handle.write(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True))
        handle.write("\n")


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    rows: list[dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                rows.append(payload)
    return rows


class JsonFileStore:
    """One directory of `<key>.json` records.

    Writes go through a temp file and `replace()`, so readers see either the
    previous or the next version of a record. Moving a record to another store
    is a single `os.rename`; when two processes race, exactly one rename wins
    and the loser sees the record as gone.
    """

    def __init__(self, root: Path, suffix: str = ".json") -> None:
        self.root = root
        self.suffix = suffix
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}{self.suffix}"

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def read(self, key: str) -> dict[str, Any] | None:
        try:
            payload = load_json(self.path_for(key), None)
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        return payload

    def write(self, key: str, value: dict[str, Any]) -> None:
        save_json(self.path_for(key), value)

    def create(self, key: str, value: dict[str, Any]) -> bool:
        if self.exists(key):
            return False
        self.write(key, value)
        return True

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        return True

    def keys(self) -> list[str]:
        return sorted(
            path.name[: -len(self.suffix)]
            for path in self.root.glob(f"*{self.suffix}")
            if not path.name.startswith(".")
        )

    def transition(
        self,
        key: str,
        target: "JsonFileStore",
        mutate: Callable[[dict[str, Any]], dict[str, Any]],
    ) -> dict[str, Any] | None:
        """Move `key` into `target` and rewrite it there; `None` when another caller won."""

        try:
            os.rename(self.path_for(key), target.path_for(key))
        except FileNotFoundError:
            return None
        record = target.read(key) or {}
        updated = mutate(dict(record))
        target.write(key, updated)
        return updated
