from __future__ import annotations

"""File-backed command queue: outbox -> processing -> completed, plus a results log."""

import json
import os
import re
import secrets
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from functools import lru_cache
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from .results import OpsGateError
from .store import append_jsonl, read_jsonl, save_json


ENVELOPE_SCHEMA_VERSION = "0.1"
SAFE_ID_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def make_request_id(prefix: str = "opsq") -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


@lru_cache(maxsize=1)
def _envelope_validator() -> Draft202012Validator:
    path = Path(__file__).resolve().parent / "schemas" / "command.schema.json"
    return Draft202012Validator(json.loads(path.read_text(encoding="utf-8")))


def envelope_errors(envelope: Any) -> list[str]:
    if not isinstance(envelope, dict):
        return ["envelope must be a JSON object"]
    errors = sorted(_envelope_validator().iter_errors(envelope), key=lambda err: list(err.path))
    return [f"{'.'.join(str(p) for p in err.path) or '<root>'}: {err.message}" for err in errors]


@dataclass(frozen=True)
class Claim:
    """One envelope owned by this worker until `complete()` is called."""

    envelope: dict[str, Any]
    claim_path: Path
    base: str

    @property
    def request_id(self) -> str:
        return str(self.envelope.get("request_id", ""))


class CommandQueue:
    def __init__(self, outbox: Path, processing: Path, completed: Path, results_path: Path) -> None:
        self.outbox = outbox
        self.processing = processing
        self.completed = completed
        self.results_path = results_path
        for path in (outbox, processing, completed):
            path.mkdir(parents=True, exist_ok=True)

    def enqueue(
        self,
        *,
        command_kind: str = "capability",
        phase: str = "plan",
        capability: str | None = None,
        action: str | None = None,
        requested_by: str = "unknown",
        payload: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
        actor_bot_id: str | None = None,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        """Validate and atomically write one envelope into the outbox."""

        rid = (request_id or "").strip() or make_request_id()
        envelope = {
            "schema_version": ENVELOPE_SCHEMA_VERSION,
            "request_id": rid,
            "command_kind": command_kind,
            "capability": capability,
            "action": action,
            "phase": phase,
            "requested_by": requested_by,
            "actor_bot_id": actor_bot_id,
            "context": context,
            "payload": payload or {},
            "created_at": _now_iso(),
        }
        errors = envelope_errors(envelope)
        if errors:
            raise OpsGateError("INVALID_ENVELOPE", errors[0], hint="check phase, command_kind and payload")
        safe_id = SAFE_ID_PATTERN.sub("_", rid)
        save_json(self.outbox / f"{int(time.time() * 1000)}_{safe_id}.json", envelope)
        return envelope

    def list_outbox(self) -> list[Path]:
        return sorted(path for path in self.outbox.glob("*.json") if not path.name.startswith("."))

    def pending_count(self) -> int:
        return len(self.list_outbox())

    def claim_next(self) -> Claim | None:
        """Rename the oldest outbox file into processing; a lost rename skips to the next file."""

        for path in self.list_outbox():
            base = path.name
            claim_path = self.processing / f"{base}.processing"
            try:
                os.rename(path, claim_path)
            except FileNotFoundError:
                continue
            try:
                envelope = json.loads(claim_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                envelope = None
            if envelope is None or envelope_errors(envelope):
                os.replace(claim_path, self.completed / f"{base}.invalid")
                continue
            return Claim(envelope=envelope, claim_path=claim_path, base=base)
        return None

    def complete(self, claim: Claim, result: dict[str, Any]) -> dict[str, Any]:
        row = {"finished_at": _now_iso(), **result}
        append_jsonl(self.results_path, row)
        suffix = ".failed.done" if row.get("ok") is False else ".done"
        try:
            os.replace(claim.claim_path, self.completed / f"{claim.base}{suffix}")
        except FileNotFoundError:
            pass
        return row

    def read_results(self, request_id: str | None = None) -> list[dict[str, Any]]:
        rows = read_jsonl(self.results_path)
        if request_id is None:
            return rows
        return [row for row in rows if row.get("request_id") == request_id]
