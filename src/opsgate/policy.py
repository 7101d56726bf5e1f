from __future__ import annotations

"""Policy document loading and the pure risk-resolution helpers built on it."""

import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml
from jsonschema import Draft202012Validator

from .results import Failure


POLICY_SCHEMA_VERSION = "0.1"
MEDIUM = "MEDIUM"
HIGH = "HIGH"
HIGH_PRECHECK = "HIGH_PRECHECK"
GIT_AWARE = "GIT_AWARE"
RISK_RANK = {MEDIUM: 1, HIGH: 2, HIGH_PRECHECK: 3}
RISK_TIERS = {MEDIUM, HIGH, HIGH_PRECHECK, GIT_AWARE}

STRICT_USER_BOT = "strict_user_bot"
SAME_USER_ANY_BOT = "same_user_any_bot"
ANY_USER_ANY_BOT = "any_user_any_bot"
IDENTITY_MODES = {STRICT_USER_BOT, SAME_USER_ANY_BOT, ANY_USER_ANY_BOT}
IDENTITY_MODE_ALIASES = {
    "strict": STRICT_USER_BOT,
    "same_user": SAME_USER_ANY_BOT,
    "any": ANY_USER_ANY_BOT,
}

MIN_HASH_MAX_BYTES = 1024
MIN_FREE_BYTES_FLOOR = 64 * 1024 * 1024

_HIGH_FORCE = {"risk_tier": HIGH, "requires_approval": True, "required_flags": ["force"]}

DEFAULT_POLICY: dict[str, Any] = {
    "schema_version": POLICY_SCHEMA_VERSION,
    "allowed_roots": ["~", "/Volumes"],
    "medium_roots": ["~/Downloads", "~/Desktop"],
    "high_roots": ["~/Documents"],
    "external_root": "/Volumes",
    "git_allowed_roots": ["~/Projects"],
    "trash_root": "~/.opsgate_trash",
    "hash_max_bytes": 32 * 1024 * 1024,
    "min_free_bytes": 1024 * 1024 * 1024,
    "identity_mode": STRICT_USER_BOT,
    "token_ttl": {"default_seconds": 180, "min_seconds": 120, "max_seconds": 300},
    "approval_grant": {
        "enabled": False,
        "grant_on_approval": True,
        "scope": "all",
        "default_ttl_seconds": 1800,
        "min_ttl_seconds": 300,
        "max_ttl_seconds": 7200,
    },
    "identity_guard": {
        "enabled": False,
        "require_context": True,
        "allowed_user_ids": [],
        "allowed_group_ids": [],
    },
    "action_risk_policy": {
        "file": {
            "git_push": {"risk_tier": GIT_AWARE, "requires_approval": True, "required_flags": ["force", "push"]},
            "trash": dict(_HIGH_FORCE),
            "rename": dict(_HIGH_FORCE),
        },
        "capability": {
            "mail:send": dict(_HIGH_FORCE),
            "photo:cleanup": dict(_HIGH_FORCE),
            "schedule:delete": dict(_HIGH_FORCE),
            "browser:checkout": dict(_HIGH_FORCE),
            "browser:post": dict(_HIGH_FORCE),
            "browser:send": dict(_HIGH_FORCE),
        },
    },
    "exec": {
        "default_decision": "approval_required",
        "allow": [
            {"pattern": r"^\s*(pwd|whoami|date|uptime|hostname|id)\s*$", "reason": "read-only shell builtin"},
            {"pattern": r"^\s*(ls|cat|head|tail|wc|df|du)(\s|$)", "reason": "read-only file inspection"},
            {"pattern": r"^\s*git\s+(status|log|diff|show|branch)(\s|$)", "reason": "read-only git"},
        ],
        "require_approval": [
            {"pattern": r"\bgit\s+push\b", "reason": "remote git mutation"},
            {"pattern": r"\b(rm|mv|chmod|chown)\s", "reason": "filesystem mutation"},
            {"pattern": r"\b(docker|kubectl|systemctl|launchctl)\b", "reason": "service control"},
        ],
        "denylist": [
            {"pattern": r"\brm\s+-[a-z]*r[a-z]*f?\s+/(\s|$)", "reason": "recursive delete of filesystem root"},
            {"pattern": r"\b(curl|wget)\b[^|]*\|\s*(sh|bash|zsh)\b", "reason": "pipe remote script to shell"},
            {"pattern": r"\bmkfs(\.|\s)", "reason": "filesystem format"},
        ],
    },
    "bot": {
        "targets": {"dev": "agent-dev", "research": "agent-research", "daily": "agent-daily"},
        "denied_targets": ["daily"],
        "dispatch_workdir": "/app",
        "dispatch_command": ["node", "scripts/bridge.js", "auto"],
    },
    "photo": {"root": "~/Pictures/opsgate"},
}


@dataclass(frozen=True)
class RiskRule:
    risk_tier: str
    requires_approval: bool
    required_flags: tuple[str, ...] = ()


@dataclass(frozen=True)
class RiskDecision:
    """Resolved risk outcome for one `(domain, action)` key."""

    risk_tier: str
    requires_approval: bool
    required_flags: tuple[str, ...]
    source: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "risk_tier": self.risk_tier,
            "requires_approval": self.requires_approval,
            "required_flags": list(self.required_flags),
            "source": self.source,
        }


@dataclass(frozen=True)
class TtlPolicy:
    default_seconds: int
    min_seconds: int
    max_seconds: int


@dataclass(frozen=True)
class GrantPolicy:
    enabled: bool
    grant_on_approval: bool
    scope: str
    ttl: TtlPolicy


@dataclass(frozen=True)
class IdentityGuard:
    enabled: bool = False
    require_context: bool = True
    allowed_user_ids: tuple[str, ...] = ()
    allowed_group_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ExecRule:
    pattern: str
    reason: str = ""


@dataclass(frozen=True)
class ExecPolicy:
    default_decision: str = "approval_required"
    allow: tuple[ExecRule, ...] = ()
    require_approval: tuple[ExecRule, ...] = ()
    denylist: tuple[ExecRule, ...] = ()


@dataclass(frozen=True)
class BotPolicy:
    targets: dict[str, str] = field(default_factory=dict)
    denied_targets: tuple[str, ...] = ()
    dispatch_workdir: str = "/app"
    dispatch_command: tuple[str, ...] = ()


@dataclass(frozen=True)
class PolicyConfig:
    """Immutable policy value; pass it explicitly to every decision point."""

    allowed_roots: tuple[str, ...]
    medium_roots: tuple[str, ...]
    high_roots: tuple[str, ...]
    external_root: str
    git_allowed_roots: tuple[str, ...]
    trash_root: str
    hash_max_bytes: int
    min_free_bytes: int
    identity_mode: str
    token_ttl: TtlPolicy
    grant: GrantPolicy
    identity_guard: IdentityGuard
    risk_rules: dict[str, dict[str, RiskRule]]
    exec_policy: ExecPolicy
    bot: BotPolicy
    photo_root: str
    source_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": POLICY_SCHEMA_VERSION,
            "source_path": self.source_path,
            "allowed_roots": list(self.allowed_roots),
            "medium_roots": list(self.medium_roots),
            "high_roots": list(self.high_roots),
            "external_root": self.external_root,
            "git_allowed_roots": list(self.git_allowed_roots),
            "trash_root": self.trash_root,
            "hash_max_bytes": self.hash_max_bytes,
            "min_free_bytes": self.min_free_bytes,
            "identity_mode": self.identity_mode,
            "token_ttl": {
                "default_seconds": self.token_ttl.default_seconds,
                "min_seconds": self.token_ttl.min_seconds,
                "max_seconds": self.token_ttl.max_seconds,
            },
            "approval_grant": {
                "enabled": self.grant.enabled,
                "grant_on_approval": self.grant.grant_on_approval,
                "scope": self.grant.scope,
                "default_ttl_seconds": self.grant.ttl.default_seconds,
                "min_ttl_seconds": self.grant.ttl.min_seconds,
                "max_ttl_seconds": self.grant.ttl.max_seconds,
            },
            "identity_guard": {
                "enabled": self.identity_guard.enabled,
                "require_context": self.identity_guard.require_context,
                "allowed_user_ids": list(self.identity_guard.allowed_user_ids),
                "allowed_group_ids": list(self.identity_guard.allowed_group_ids),
            },
            "action_risk_policy": {
                domain: {
                    action: {
                        "risk_tier": rule.risk_tier,
                        "requires_approval": rule.requires_approval,
                        "required_flags": list(rule.required_flags),
                    }
                    for action, rule in sorted(rules.items())
                }
                for domain, rules in sorted(self.risk_rules.items())
            },
            "exec": {
                "default_decision": self.exec_policy.default_decision,
                "allow": [{"pattern": r.pattern, "reason": r.reason} for r in self.exec_policy.allow],
                "require_approval": [
                    {"pattern": r.pattern, "reason": r.reason} for r in self.exec_policy.require_approval
                ],
                "denylist": [{"pattern": r.pattern, "reason": r.reason} for r in self.exec_policy.denylist],
            },
            "bot": {
                "targets": dict(self.bot.targets),
                "denied_targets": list(self.bot.denied_targets),
                "dispatch_workdir": self.bot.dispatch_workdir,
                "dispatch_command": list(self.bot.dispatch_command),
            },
            "photo": {"root": self.photo_root},
        }


def _schema_path() -> Path:
    return Path(__file__).resolve().parent / "schemas" / "policy.schema.json"


def _load_schema() -> dict[str, Any]:
    path = _schema_path()
    if not path.exists():
        raise ValueError(f"Policy schema file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Policy schema is not valid JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Policy schema must be a JSON object: {path}")
    return payload


def default_policy_document() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_POLICY)


def deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Merge `override` into a copy of `base`; lists and scalars replace, mappings recurse."""

    merged = copy.deepcopy(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def expand_path(value: str) -> str:
    return os.path.abspath(os.path.expanduser(str(value)))


def is_within(path: str, root: str) -> bool:
    candidate = os.path.normpath(path)
    base = os.path.normpath(root)
    if candidate == base:
        return True
    return candidate.startswith(base.rstrip(os.sep) + os.sep)


def is_within_any(path: str, roots: Iterable[str]) -> bool:
    return any(is_within(path, root) for root in roots)


def has_git_component(path: str) -> bool:
    return ".git" in Path(path).parts


def normalize_flags(values: Iterable[Any] | None) -> list[str]:
    """Lowercase, strip leading `--`, drop blanks and duplicates, keep first-seen order."""

    normalized: list[str] = []
    seen: set[str] = set()
    for value in values or []:
        text = str(value).strip().lower()
        while text.startswith("-"):
            text = text[1:]
        if not text or text in seen:
            continue
        seen.add(text)
        normalized.append(text)
    return normalized


def normalize_identity_mode(value: Any, fallback: str = STRICT_USER_BOT) -> str:
    text = str(value or "").strip().lower()
    text = IDENTITY_MODE_ALIASES.get(text, text)
    if text in IDENTITY_MODES:
        return text
    return fallback


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def clamp_ttl(requested: Any, ttl: TtlPolicy) -> int:
    """Clamp a requested TTL into `[min, max]`; unusable input falls back to the default."""

    try:
        seconds = int(requested)
    except (TypeError, ValueError):
        seconds = ttl.default_seconds
    if seconds <= 0:
        seconds = ttl.default_seconds
    return _clamp(seconds, ttl.min_seconds, ttl.max_seconds)


def _ttl_policy(node: Mapping[str, Any], *, key_infix: str, default: int, low: int, high: int) -> TtlPolicy:
    min_seconds = int(node.get(f"min_{key_infix}seconds", low))
    max_seconds = int(node.get(f"max_{key_infix}seconds", high))
    if max_seconds < min_seconds:
        max_seconds = min_seconds
    default_seconds = _clamp(int(node.get(f"default_{key_infix}seconds", default)), min_seconds, max_seconds)
    return TtlPolicy(default_seconds=default_seconds, min_seconds=min_seconds, max_seconds=max_seconds)


def _risk_rules(node: Mapping[str, Any]) -> dict[str, dict[str, RiskRule]]:
    rules: dict[str, dict[str, RiskRule]] = {}
    for domain, table in node.items():
        if not isinstance(table, Mapping):
            continue
        domain_rules: dict[str, RiskRule] = {}
        for action, raw in table.items():
            if not isinstance(raw, Mapping):
                continue
            tier = str(raw.get("risk_tier", HIGH)).upper()
            if tier not in RISK_TIERS:
                tier = HIGH
            domain_rules[str(action)] = RiskRule(
                risk_tier=tier,
                requires_approval=bool(raw.get("requires_approval", False)),
                required_flags=tuple(normalize_flags(raw.get("required_flags", []))),
            )
        rules[str(domain)] = domain_rules
    return rules


def _exec_rules(items: Any) -> tuple[ExecRule, ...]:
    if not isinstance(items, list):
        return ()
    return tuple(
        ExecRule(pattern=str(item["pattern"]), reason=str(item.get("reason", "")))
        for item in items
        if isinstance(item, Mapping) and item.get("pattern")
    )


def policy_from_document(document: Mapping[str, Any], *, source_path: str | None = None) -> PolicyConfig:
    """Normalize a merged, schema-valid policy document into a `PolicyConfig`."""

    grant_node = document.get("approval_grant", {})
    guard_node = document.get("identity_guard", {})
    exec_node = document.get("exec", {})
    bot_node = document.get("bot", {})
    return PolicyConfig(
        allowed_roots=tuple(expand_path(p) for p in document.get("allowed_roots", [])),
        medium_roots=tuple(expand_path(p) for p in document.get("medium_roots", [])),
        high_roots=tuple(expand_path(p) for p in document.get("high_roots", [])),
        external_root=expand_path(document.get("external_root", "/Volumes")),
        git_allowed_roots=tuple(expand_path(p) for p in document.get("git_allowed_roots", [])),
        trash_root=expand_path(document.get("trash_root", "~/.opsgate_trash")),
        hash_max_bytes=max(MIN_HASH_MAX_BYTES, int(document.get("hash_max_bytes", 0))),
        min_free_bytes=max(MIN_FREE_BYTES_FLOOR, int(document.get("min_free_bytes", 0))),
        identity_mode=normalize_identity_mode(document.get("identity_mode")),
        token_ttl=_ttl_policy(document.get("token_ttl", {}), key_infix="", default=180, low=120, high=300),
        grant=GrantPolicy(
            enabled=bool(grant_node.get("enabled", False)),
            grant_on_approval=bool(grant_node.get("grant_on_approval", True)),
            scope=str(grant_node.get("scope", "all")).strip() or "all",
            ttl=_ttl_policy(grant_node, key_infix="ttl_", default=1800, low=300, high=7200),
        ),
        identity_guard=IdentityGuard(
            enabled=bool(guard_node.get("enabled", False)),
            require_context=bool(guard_node.get("require_context", True)),
            allowed_user_ids=tuple(str(v) for v in guard_node.get("allowed_user_ids", [])),
            allowed_group_ids=tuple(str(v) for v in guard_node.get("allowed_group_ids", [])),
        ),
        risk_rules=_risk_rules(document.get("action_risk_policy", {})),
        exec_policy=ExecPolicy(
            default_decision=str(exec_node.get("default_decision", "approval_required")),
            allow=_exec_rules(exec_node.get("allow")),
            require_approval=_exec_rules(exec_node.get("require_approval")),
            denylist=_exec_rules(exec_node.get("denylist")),
        ),
        bot=BotPolicy(
            targets={str(k).lower(): str(v) for k, v in bot_node.get("targets", {}).items()},
            denied_targets=tuple(str(v).lower() for v in bot_node.get("denied_targets", [])),
            dispatch_workdir=str(bot_node.get("dispatch_workdir", "/app")),
            dispatch_command=tuple(str(v) for v in bot_node.get("dispatch_command", [])),
        ),
        photo_root=expand_path(document.get("photo", {}).get("root", "~/Pictures/opsgate")),
        source_path=source_path,
    )


def validate_policy_document(document: Any, *, where: str = "<policy>") -> None:
    if not isinstance(document, dict):
        raise ValueError(f"Policy document must be a mapping: {where}")
    validator = Draft202012Validator(_load_schema())
    errors = sorted(validator.iter_errors(document), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.path) or "<root>"
        raise ValueError(f"Policy schema validation failed for {where} at {location}: {first.message}")


def load_policy(
    path: Path | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
) -> PolicyConfig:
    """Load defaults, deep-merge the YAML file and overrides, validate, and normalize."""

    environ = os.environ if env is None else env
    document = default_policy_document()
    source_path: str | None = None
    if path is not None and path.exists():
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValueError(f"Policy file must be a mapping: {path}")
        document = deep_merge(document, payload)
        source_path = str(path)
    if overrides:
        document = deep_merge(document, overrides)
    mode_override = (environ.get("OPSGATE_IDENTITY_MODE") or "").strip()
    if mode_override:
        document["identity_mode"] = mode_override
    validate_policy_document(document, where=source_path or "<policy>")
    return policy_from_document(document, source_path=source_path)


def resolve_action_risk_policy(
    policy: PolicyConfig,
    domain: str,
    action: str,
    fallback: RiskDecision | None = None,
) -> RiskDecision:
    """Pick the exact rule, then the domain `default` rule, then the caller's fallback.

    Any decision that requires approval carries at least one required flag, and
    a decision that does not require approval carries none.
    """

    table = policy.risk_rules.get(domain, {})
    rule = table.get(action)
    source = "exact"
    if rule is None:
        rule = table.get("default")
        source = "default"
    if rule is not None:
        decision = RiskDecision(
            risk_tier=rule.risk_tier,
            requires_approval=rule.requires_approval,
            required_flags=rule.required_flags,
            source=source,
        )
    elif fallback is not None:
        decision = RiskDecision(
            risk_tier=fallback.risk_tier,
            requires_approval=fallback.requires_approval,
            required_flags=tuple(normalize_flags(fallback.required_flags)),
            source="fallback",
        )
    else:
        decision = RiskDecision(risk_tier=HIGH, requires_approval=True, required_flags=("force",), source="fallback")
    if decision.requires_approval and not decision.required_flags:
        decision = RiskDecision(
            risk_tier=decision.risk_tier,
            requires_approval=True,
            required_flags=("force",),
            source=decision.source,
        )
    if not decision.requires_approval and decision.required_flags:
        decision = RiskDecision(
            risk_tier=decision.risk_tier,
            requires_approval=False,
            required_flags=(),
            source=decision.source,
        )
    return decision


def is_git_action(action: str) -> bool:
    return action.startswith("git_")


def path_risk_tier(policy: PolicyConfig, path: str) -> str:
    if is_within(path, policy.external_root):
        return HIGH_PRECHECK
    if is_within_any(path, policy.high_roots):
        return HIGH
    if is_within_any(path, policy.medium_roots):
        return MEDIUM
    return HIGH


def classify_risk_tier(policy: PolicyConfig, action: str, paths: Iterable[str]) -> str:
    """Return the highest-ranked tier across `paths`; git actions are always `GIT_AWARE`."""

    if is_git_action(action):
        return GIT_AWARE
    best = MEDIUM
    for path in paths:
        if not path:
            continue
        tier = path_risk_tier(policy, expand_path(path))
        if RISK_RANK[tier] > RISK_RANK[best]:
            best = tier
    return best


def required_flags_for_plan(action: str, risk_tier: str, mutating: bool) -> list[str]:
    if not mutating:
        return []
    if action == "git_push":
        return ["force", "push"]
    if risk_tier == MEDIUM:
        return []
    return ["force"]


def check_identity_guard(policy: PolicyConfig, context: Mapping[str, Any] | None) -> Failure | None:
    """Reject requests whose chat identity context falls outside the configured allowlists."""

    guard = policy.identity_guard
    if not guard.enabled:
        return None
    context = context or {}
    user_id = str(context.get("user_id") or "").strip()
    group_id = str(context.get("group_id") or "").strip()
    if not user_id:
        if guard.require_context:
            return Failure("IDENTITY_CONTEXT_REQUIRED", "identity context with user_id is required.")
        return None
    if not guard.allowed_user_ids and not guard.allowed_group_ids:
        return None
    if user_id in guard.allowed_user_ids:
        return None
    if group_id and group_id in guard.allowed_group_ids:
        return None
    return Failure(
        "IDENTITY_NOT_ALLOWED",
        "requester identity is not in the allowed user or group list.",
        context={"provider": context.get("provider")},
    )
