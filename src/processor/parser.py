"""Regex line profiles: raw text line -> (event time, normalized fields).

Profiles come from ``config/mapping.yaml``.  Each profile defines:
  - a line regex with named groups
  - timestamp format (iso_space / iso_t / syslog / any strptime pattern)
  - field extractions (host, severity, event type, component, ip, actor, kv)

All regexes are compiled once per profile and reused for every line.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any

from src.shared.timeutil import format_ts

log = logging.getLogger(__name__)

_TS_PATTERNS: dict[str, str] = {
    "iso_space": "%Y-%m-%d %H:%M:%S",
    "iso_t": "%Y-%m-%dT%H:%M:%SZ",
    "syslog": "%Y %b %d %H:%M:%S",
}

_SEVERITY_ORDER = ("critical", "high", "medium", "low")
_SYSLOG_FUTURE_SLACK = timedelta(days=1)


@dataclass(slots=True)
class Profile:
    """Compiled parsing profile (one per text log format)."""

    name: str
    key_pattern: re.Pattern[str] | None
    line_regex: re.Pattern[str]
    timestamp_format: str
    year_default: int | None
    host_field: str
    level_field: str | None
    message_field: str
    severity_map: dict[str, str]
    severity_from_message: dict[str, list[str]]
    event_rules: list[tuple[re.Pattern[str], str, str]]
    component_rules: list[tuple[re.Pattern[str], str]]
    ip_regex: re.Pattern[str] | None
    actor_regex: re.Pattern[str] | None
    kv_regex: re.Pattern[str] | None
    defaults: dict[str, str]


def _opt_regex(cfg: dict[str, Any], name: str, flags: int = 0) -> re.Pattern[str] | None:
    return re.compile(cfg[name], flags) if cfg.get(name) else None


def build_profiles(mapping: dict[str, Any]) -> dict[str, Profile]:
    """Compile all profiles of a mapping config, keyed by profile name."""
    defaults = mapping.get("defaults", {})
    result: dict[str, Profile] = {}

    for name, cfg in mapping.get("profiles", {}).items():
        sev_msg = {sev: [p.lower() for p in pats] for sev, pats in cfg.get("severity_from_message", {}).items()}
        level_field = cfg.get("level_field")
        if level_field is None or str(level_field).lower() == "null":
            level_field = None

        result[name] = Profile(
            name=name,
            key_pattern=_opt_regex(cfg, "key_pattern", re.IGNORECASE),
            line_regex=re.compile(cfg["line_regex"]),
            timestamp_format=cfg.get("timestamp_format", "iso_space"),
            year_default=cfg.get("year_default"),
            host_field=cfg.get("host_field", "host"),
            level_field=level_field,
            message_field=cfg.get("message_field", "msg"),
            severity_map={k.lower(): v for k, v in cfg.get("severity_map", {}).items()},
            severity_from_message=sev_msg,
            event_rules=[
                (re.compile(r["pattern"]), r["event"], r.get("tags", "")) for r in cfg.get("event_rules", [])
            ],
            component_rules=[
                (re.compile(r["pattern"], re.IGNORECASE), r["component"]) for r in cfg.get("component_rules", [])
            ],
            ip_regex=_opt_regex(cfg, "ip_regex"),
            actor_regex=_opt_regex(cfg, "actor_regex"),
            kv_regex=_opt_regex(cfg, "kv_regex"),
            defaults=defaults,
        )
        log.debug("Compiled profile '%s' (%s timestamps)", name, result[name].timestamp_format)

    return result


def select_profile(profiles: dict[str, Profile], object_key: str) -> Profile | None:
    """First profile whose ``key_pattern`` matches the object key."""
    for p in profiles.values():
        if p.key_pattern is not None and p.key_pattern.search(object_key):
            return p
    return None


# ── Timestamp ────────────────────────────────────────────────────────────────


def _parse_timestamp(
    groups: dict[str, str], profile: Profile, tz: tzinfo, reference: datetime | None
) -> str | None:
    """Event time from named groups as ISO-8601 UTC, or None.

    Syslog stamps carry no year: it comes from the profile's ``year_default``
    or else from *reference* (when the object was received).  A stamp more
    than a day after *reference* belongs to the previous year (December
    lines received in January).
    """
    fmt = profile.timestamp_format
    try:
        if fmt == "syslog":
            month, day, clock = groups.get("month", ""), groups.get("day", ""), groups.get("time", "")
            if not (month and day and clock):
                return None
            year = profile.year_default or (reference.year if reference else None)
            if year is None:
                return None
            # Parse with the year so that Feb 29 is checked against the right calendar.
            dt = datetime.strptime(f"{year} {month} {day} {clock}", _TS_PATTERNS["syslog"]).replace(tzinfo=tz)
            if not profile.year_default and reference is not None and dt - reference > _SYSLOG_FUTURE_SLACK:
                dt = datetime.strptime(
                    f"{year - 1} {month} {day} {clock}", _TS_PATTERNS["syslog"]
                ).replace(tzinfo=tz)
        else:
            raw = groups.get("ts", "")
            if not raw:
                return None
            dt = datetime.strptime(raw, _TS_PATTERNS.get(fmt, fmt)).replace(tzinfo=tz)
        return format_ts(dt)
    except (ValueError, OverflowError) as exc:
        log.debug("Timestamp parse error: %s", exc)
        return None


# ── Field extraction ─────────────────────────────────────────────────────────


def _detect_severity(groups: dict[str, str], message: str, profile: Profile) -> str:
    if profile.level_field:
        level = (groups.get(profile.level_field) or "").lower()
        if level in profile.severity_map:
            return profile.severity_map[level]
    msg_lower = message.lower()
    for sev in _SEVERITY_ORDER:
        if any(pat in msg_lower for pat in profile.severity_from_message.get(sev, [])):
            return sev
    return profile.defaults.get("severity", "low")


def _detect_component(host: str, profile: Profile) -> str:
    for pattern, component in profile.component_rules:
        if pattern.search(host):
            return component
    return profile.defaults.get("component", "unknown")


def _detect_event(message: str, profile: Profile) -> tuple[str, str]:
    """Event type and tags; first matching rule wins."""
    for pattern, event, tags in profile.event_rules:
        if pattern.search(message):
            return event, tags
    return profile.defaults.get("event", "raw_log"), ""


def _first_group(regex: re.Pattern[str] | None, message: str) -> str:
    if regex is None:
        return ""
    m = regex.search(message)
    return m.group(1) if m else ""


def _extract_kv(message: str, profile: Profile) -> tuple[str, str, str]:
    """First ``key=value`` pair, numeric value split from its unit ("231.4V")."""
    if profile.kv_regex:
        matches = profile.kv_regex.findall(message)
        if matches:
            key, raw_value = matches[0]
            m = re.match(r"^([+-]?\d+\.?\d*)\s*([a-zA-Z/%]*)$", raw_value)
            if m:
                return key, m.group(1), m.group(2)
            return key, raw_value, ""
    return "", "", ""


def parse_line(
    line: str, profile: Profile, tz: tzinfo = UTC, reference: datetime | None = None
) -> tuple[str, dict[str, Any]] | tuple[None, str]:
    """Parse one raw line.

    Returns ``(event_time, fields)`` on success and ``(None, reason)``
    on failure; blank lines never reach this function.
    """
    line = line.rstrip("\n\r")
    m = profile.line_regex.match(line)
    if not m:
        return None, "parse_error"

    groups = m.groupdict()
    ts = _parse_timestamp(groups, profile, tz, reference)
    if ts is None:
        return None, "no_timestamp"

    host = groups.get(profile.host_field) or profile.defaults.get("host", "unknown")
    message = groups.get(profile.message_field) or ""
    event_type, tags = _detect_event(message, profile)
    key, value, unit = _extract_kv(message, profile)

    fields: dict[str, Any] = {
        "host": host,
        "component": _detect_component(host, profile),
        "severity": _detect_severity(groups, message, profile),
        "event": event_type,
        "tags": tags,
        "ip": _first_group(profile.ip_regex, message),
        "actor": _first_group(profile.actor_regex, message),
        "message": message[:2048],
    }
    if key:
        fields.update({"key": key, "value": value, "unit": unit})
    return ts, fields
