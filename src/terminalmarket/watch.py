"""
Parser for ``tm watch create``'s trailing arguments.

Grammar: a fixed set of flags, each taking exactly one value (``--flag value``
or ``--flag=value``); every other token belongs to the free-text query, kept in
its original order.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from .client import ValidationError

WATCH_FLAGS: dict[str, str] = {
    "--notify": "notify",
    "--interval": "interval",
    "--action": "action",
    "--name": "name",
}

DEFAULT_NOTIFY = "in_app"
DEFAULT_INTERVAL_MINUTES = 60
DEFAULT_ACTION = "notify"


@dataclass(frozen=True)
class WatchRuleSpec:
    query: str
    notify: str = DEFAULT_NOTIFY
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    action: str = DEFAULT_ACTION
    name: str | None = None

    def to_payload(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "query": self.query,
            "notifyChannel": self.notify,
            "intervalMinutes": self.interval_minutes,
            "action": self.action,
        }
        if self.name:
            body["name"] = self.name
        return body


def _extract_flags(tokens: Sequence[str]) -> tuple[dict[str, str], list[str]]:
    flags: dict[str, str] = {}
    rest: list[str] = []
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        flag, eq, inline = tok.partition("=")
        if flag in WATCH_FLAGS:
            if eq:
                value = inline
            elif i + 1 < len(tokens):
                i += 1
                value = tokens[i]
            else:
                raise ValidationError(f"{flag} requires a value")
            if not value.strip():
                raise ValidationError(f"{flag} requires a value")
            flags[WATCH_FLAGS[flag]] = value.strip()
        else:
            rest.append(tok)
        i += 1
    return flags, rest


def parse_watch_args(tokens: Sequence[str]) -> WatchRuleSpec:
    flags, rest = _extract_flags(tokens)

    query = " ".join(t for t in rest if t.strip()).strip()
    if not query:
        raise ValidationError('watch create needs a query, e.g. tm watch create "search coffee | sort price"')

    interval = DEFAULT_INTERVAL_MINUTES
    if "interval" in flags:
        try:
            interval = int(flags["interval"])
        except ValueError:
            raise ValidationError(f"--interval must be a whole number of minutes, got {flags['interval']!r}") from None
        if interval < 1:
            raise ValidationError("--interval must be at least 1 minute")

    return WatchRuleSpec(
        query=query,
        notify=flags.get("notify", DEFAULT_NOTIFY),
        interval_minutes=interval,
        action=flags.get("action", DEFAULT_ACTION),
        name=flags.get("name"),
    )
