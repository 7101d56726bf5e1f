from __future__ import annotations

"""Audit event sanitization, day-partitioned persistence, and local summary export."""

import re
import sys
import unicodedata
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from .security import REDACTED, RAW_TOKEN_KEYS, hash_token, is_sensitive_key, redact_text, sha256_hex
from .store import append_jsonl, read_jsonl


SCHEMA_VERSION = "0.1"
VALID_EVENT_TYPES = {
    "auto_execute_decision",
    "approval_request_created",
    "approval_decision",
    "approval_grant_created",
    "approval_grant_bypass",
    "plan_drift_detected",
    "execution_result",
    "request_failed",
    "api_internal_error",
}
MAX_STRING_LENGTH = 400
RANGE_PATTERN = re.compile(r"^(\d+)([dh])$")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _utc_now_rfc3339() -> str:
    return _utc_now().replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _strip_control_chars(value: str) -> str:
    return "".join(ch for ch in value if ch in "\n\t" or not unicodedata.category(ch).startswith("C"))


@dataclass(frozen=True)
class SanitizeStats:
    """Counts for redactions and truncations emitted during sanitization."""

    redacted_fields: int = 0
    truncated_fields: int = 0

    def __add__(self, other: "SanitizeStats") -> "SanitizeStats":
        return SanitizeStats(
            redacted_fields=self.redacted_fields + other.redacted_fields,
            truncated_fields=self.truncated_fields + other.truncated_fields,
        )


def _sanitize_text(value: str) -> tuple[str, SanitizeStats]:
    cleaned, hits = redact_text(_strip_control_chars(value))
    stats = SanitizeStats(redacted_fields=1 if hits else 0)
    if len(cleaned) > MAX_STRING_LENGTH:
        return f"{cleaned[:MAX_STRING_LENGTH]}...[truncated]", stats + SanitizeStats(truncated_fields=1)
    return cleaned, stats


def sanitize_event_data(data: Any, *, key: str | None = None) -> tuple[Any, SanitizeStats]:
    """Recursively mask token values, credential keys and secret-looking strings."""

    if key is not None and key.lower() in RAW_TOKEN_KEYS and isinstance(data, str) and data:
        return hash_token(data), SanitizeStats(redacted_fields=1)
    if key is not None and is_sensitive_key(key) and key.lower() not in RAW_TOKEN_KEYS and key != "token_hash":
        if data is None or isinstance(data, bool):
            return data, SanitizeStats()
        return REDACTED, SanitizeStats(redacted_fields=1)
    if isinstance(data, dict):
        sanitized: dict[str, Any] = {}
        stats = SanitizeStats()
        for child_key, value in data.items():
            value_sanitized, value_stats = sanitize_event_data(value, key=str(child_key))
            sanitized[str(child_key)] = value_sanitized
            stats = stats + value_stats
        return sanitized, stats
    if isinstance(data, (list, tuple)):
        items: list[Any] = []
        stats = SanitizeStats()
        for item in data:
            item_sanitized, item_stats = sanitize_event_data(item)
            items.append(item_sanitized)
            stats = stats + item_stats
        return items, stats
    if data is None or isinstance(data, (int, float, bool)):
        return data, SanitizeStats()
    return _sanitize_text(str(data))


def parse_range(range_value: str) -> timedelta:
    """Parse compact duration windows such as `7d` or `24h`."""

    match = RANGE_PATTERN.match(range_value.strip().lower())
    if not match:
        raise ValueError("range must be like 7d or 24h")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError("range amount must be > 0")
    if match.group(2) == "d":
        return timedelta(days=amount)
    return timedelta(hours=amount)


class AuditLog:
    """Append-only audit trail, one JSONL file per UTC day."""

    def __init__(self, audit_dir: Path) -> None:
        self.audit_dir = audit_dir
        self.audit_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, day: datetime) -> Path:
        return self.audit_dir / f"{day.strftime('%Y-%m-%d')}.jsonl"

    def _base_event(
        self,
        *,
        event_type: str,
        requester: str | None,
        bot_id: str | None,
        token: str | None,
        action_type: str | None,
        risk_level: str | None,
        decision: str | None,
        request_id: str | None,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        if event_type not in VALID_EVENT_TYPES:
            payload = {"reason": "invalid_event_type", "invalid_event_type_hash": sha256_hex(str(event_type))}
            event_type = "request_failed"
        return {
            "schema_version": SCHEMA_VERSION,
            "event_id": str(uuid.uuid4()),
            "ts": _utc_now_rfc3339(),
            "event_type": event_type,
            "actor": {"requester": requester or "unknown", "bot_id": bot_id or ""},
            "token_hash": hash_token(token) if token else None,
            "action_type": action_type,
            "risk_level": risk_level,
            "decision": decision,
            "request_id": request_id,
            "payload": payload,
        }

    def log_event(
        self,
        event_type: str,
        *,
        requester: str | None = None,
        bot_id: str | None = None,
        token: str | None = None,
        action_type: str | None = None,
        risk_level: str | None = None,
        decision: str | None = None,
        request_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Write one sanitized event; failures go to stderr and never propagate."""

        try:
            sanitized, stats = sanitize_event_data(payload or {})
            if stats.redacted_fields or stats.truncated_fields:
                sanitized["sanitized"] = {
                    "fields_redacted_count": stats.redacted_fields,
                    "fields_truncated_count": stats.truncated_fields,
                }
            requester_text, _ = _sanitize_text(str(requester)) if requester else (None, None)
            event = self._base_event(
                event_type=event_type,
                requester=requester_text,
                bot_id=bot_id,
                token=token,
                action_type=action_type,
                risk_level=risk_level,
                decision=decision,
                request_id=request_id,
                payload=sanitized,
            )
            append_jsonl(self.path_for(_utc_now()), event)
            return event
        except Exception as exc:  # noqa: BLE001
            print(f"[audit] failed to append event: {exc}", file=sys.stderr)
            return None

    def iter_events(self) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = []
        for path in sorted(self.audit_dir.glob("*.jsonl")):
            events.extend(read_jsonl(path))
        return events

    def export_summary(self, *, range_value: str = "7d", requester: str | None = None) -> dict[str, Any]:
        """Aggregate windowed audit counts, optionally for one requester."""

        end = _utc_now()
        start = end - parse_range(range_value)
        in_window: list[dict[str, Any]] = []
        for event in self.iter_events():
            parsed_ts = _parse_ts(event.get("ts"))
            if parsed_ts is None or not (start <= parsed_ts <= end):
                continue
            actor = event.get("actor") if isinstance(event.get("actor"), dict) else {}
            if requester is not None and actor.get("requester") != requester:
                continue
            in_window.append(event)

        by_type = Counter(str(evt.get("event_type")) for evt in in_window)
        by_decision = Counter(str(evt.get("decision")) for evt in in_window if evt.get("decision"))
        by_risk = Counter(str(evt.get("risk_level")) for evt in in_window if evt.get("risk_level"))
        by_action = Counter(str(evt.get("action_type")) for evt in in_window if evt.get("action_type"))
        results = [evt for evt in in_window if evt.get("event_type") == "execution_result"]
        failures = Counter(
            str(evt.get("payload", {}).get("error_code") or "unknown")
            for evt in in_window
            if evt.get("event_type") == "request_failed"
            or (evt.get("event_type") == "execution_result" and evt.get("decision") == "failed")
        )
        succeeded = sum(1 for evt in results if evt.get("decision") == "ok")

        return {
            "schema_version": SCHEMA_VERSION,
            "generated_at": _utc_now_rfc3339(),
            "range": range_value,
            "requester_filter": requester,
            "window_start": start.replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            "window_end": end.replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            "events_considered": len(in_window),
            "events_by_type": dict(sorted(by_type.items())),
            "events_by_decision": dict(sorted(by_decision.items())),
            "events_by_risk_level": dict(sorted(by_risk.items())),
            "top_actions": [
                {"action_type": action, "count": count}
                for action, count in sorted(by_action.items(), key=lambda item: (-item[1], item[0]))[:10]
            ],
            "executions_total": len(results),
            "execution_success_rate": round(succeeded / len(results), 4) if results else 0.0,
            "failures_by_code": dict(sorted(failures.items())),
            "drift_detections": by_type.get("plan_drift_detected", 0),
            "grant_bypasses": by_type.get("approval_grant_bypass", 0),
        }
