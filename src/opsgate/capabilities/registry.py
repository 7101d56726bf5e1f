from __future__ import annotations

from pathlib import Path

from ..results import Result
from .base import Capability
from .bot import BotCapability
from .browser import BrowserCapability
from .exec import ExecCapability
from .file_control import FileControlCapability
from .mail import MailCapability
from .photo import PhotoCapability
from .schedule import ScheduleCapability


CAPABILITY_ALIASES = {
    "file": ("files", "file_control", "fs"),
    "exec": ("shell", "command"),
    "mail": ("email",),
    "photo": ("camera", "photos"),
    "schedule": ("calendar", "reminder", "reminders"),
    "browser": ("web",),
    "bot": ("bots", "bot_dispatch"),
}


class CapabilityRegistry:
    """Capability handlers keyed by name, fixed at construction."""

    def __init__(self, handlers: list[Capability]) -> None:
        self._handlers: dict[str, Capability] = {}
        for handler in handlers:
            self._handlers[handler.name] = handler

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def resolve(self, name: str | None) -> Result[Capability]:
        wanted = (name or "").strip().lower()
        for canonical, aliases in CAPABILITY_ALIASES.items():
            if wanted in aliases:
                wanted = canonical
                break
        handler = self._handlers.get(wanted)
        if handler is None:
            return Result.failure("UNSUPPORTED_ACTION", f"unknown capability '{name}'.", capability=name)
        return Result.success(handler)

    def describe(self) -> list[dict[str, object]]:
        return [
            {
                "capability": handler.name,
                "actions": sorted(handler.actions),
                "mutating_actions": sorted(handler.mutating_actions),
            }
            for _, handler in sorted(self._handlers.items())
        ]


def default_registry(state_dir: Path) -> CapabilityRegistry:
    return CapabilityRegistry(
        [
            FileControlCapability(state_dir),
            ExecCapability(state_dir),
            MailCapability(state_dir),
            PhotoCapability(state_dir),
            ScheduleCapability(state_dir),
            BrowserCapability(state_dir),
            BotCapability(state_dir),
        ]
    )
