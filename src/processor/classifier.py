"""Classifier capability: raw object bytes + source hints -> normalized records.

Variants are selected per source through :class:`ClassifierRegistry`, keyed
by the ``format`` hint of the source, never by inspecting the content.
A classifier is a pure function of its inputs.
"""

from __future__ import annotations

import abc
import gzip
import json
import logging
import zlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from typing import Any, ClassVar

from src.contracts.record import NormalizedRecord
from src.processor.parser import Profile, parse_line, select_profile
from src.settings.sources import SourceHints, SourceRegistry
from src.shared.errors import ConfigurationError, MalformedInputError
from src.shared.timeutil import format_ts, parse_ts

log = logging.getLogger(__name__)

_GZIP_MAGIC = b"\x1f\x8b"
_TIMESTAMP_CANDIDATES = ("timestamp", "time", "eventTime", "@timestamp", "ts")

LineParser = Callable[[str], "tuple[str, dict[str, Any]] | str"]


@dataclass(slots=True, frozen=True)
class LineFailure:
    line_no: int
    raw_line: str
    reason: str


@dataclass(slots=True)
class ClassificationResult:
    records: list[NormalizedRecord] = field(default_factory=list)
    failures: list[LineFailure] = field(default_factory=list)


def decode_object(data: bytes, encoding: str) -> str:
    """Decompress (gzip, detected by magic bytes) and decode object bytes."""
    try:
        if data[:2] == _GZIP_MAGIC:
            data = gzip.decompress(data)
        return data.decode(encoding)
    except (OSError, EOFError, zlib.error) as exc:
        raise MalformedInputError(f"corrupt compressed object: {exc}") from exc
    except (UnicodeDecodeError, LookupError) as exc:
        raise MalformedInputError(f"cannot decode object as {encoding}: {exc}") from exc


class Classifier(abc.ABC):
    """One log-format variant."""

    format_name: ClassVar[str] = "base"

    def classify(
        self, data: bytes, hints: SourceHints, object_location: str, received_at: str | None = None
    ) -> ClassificationResult:
        text = decode_object(data, hints.encoding)
        parse = self.line_parser(hints, object_location, received_at)
        result = ClassificationResult()
        for line_no, line in enumerate(text.splitlines(), 1):
            if not line.strip():
                continue
            parsed = parse(line)
            if isinstance(parsed, str):
                result.failures.append(LineFailure(line_no, line[:4096], parsed))
                continue
            ts, payload = parsed
            result.records.append(
                NormalizedRecord(
                    schema_id=hints.schema,
                    event_timestamp=ts,
                    payload=payload,
                    source_id=hints.source_id,
                    ingest_object_location=object_location,
                )
            )
        log.debug(
            "%s classified %s: %d records, %d failures",
            self.format_name,
            object_location,
            len(result.records),
            len(result.failures),
        )
        return result

    @abc.abstractmethod
    def line_parser(self, hints: SourceHints, object_location: str, received_at: str | None = None) -> LineParser:
        """Return a parser for the lines of one object.

        The parser maps a line to ``(event_time, payload)`` or to a failure
        reason string.  Per-object resolution (e.g. picking a profile) happens
        here, once, so that the classifier instance itself stays stateless.
        *received_at* dates lines whose timestamps omit the year.
        """


def _coerce_timestamp(value: Any) -> str | None:
    """ISO-8601 string or epoch seconds/milliseconds -> ISO-8601 UTC."""
    try:
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            seconds = value / 1000.0 if value > 1e11 else float(value)
            return format_ts(datetime.fromtimestamp(seconds, tz=UTC))
        if isinstance(value, str) and value:
            return format_ts(parse_ts(value))
    except (ValueError, OverflowError, OSError):
        return None
    return None


class JsonLinesClassifier(Classifier):
    """One JSON object per line; the object itself becomes the payload."""

    format_name = "jsonl"

    def line_parser(self, hints: SourceHints, object_location: str, received_at: str | None = None) -> LineParser:
        fields = (hints.timestamp_field,) if hints.timestamp_field else _TIMESTAMP_CANDIDATES

        def parse(line: str) -> tuple[str, dict[str, Any]] | str:
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                return "parse_error"
            if not isinstance(obj, dict):
                return "not_an_object"
            for name in fields:
                if name in obj:
                    ts = _coerce_timestamp(obj[name])
                    return (ts, obj) if ts else "bad_timestamp"
            return "no_timestamp"

        return parse


class RegexProfileClassifier(Classifier):
    """Text logs parsed with a named profile from ``mapping.yaml``."""

    format_name = "regex"

    def __init__(self, profiles: dict[str, Profile], tz: tzinfo = UTC) -> None:
        self.profiles = profiles
        self.tz = tz

    def profile_for(self, hints: SourceHints, object_location: str) -> Profile:
        if hints.profile:
            try:
                return self.profiles[hints.profile]
            except KeyError:
                raise ConfigurationError(
                    f"source '{hints.source_id}' references unknown profile '{hints.profile}'"
                ) from None
        profile = select_profile(self.profiles, object_location)
        if profile is None:
            raise ConfigurationError(f"no regex profile matches {object_location}")
        return profile

    def line_parser(self, hints: SourceHints, object_location: str, received_at: str | None = None) -> LineParser:
        profile = self.profile_for(hints, object_location)
        reference = parse_ts(received_at) if received_at else None

        def parse(line: str) -> tuple[str, dict[str, Any]] | str:
            ts, fields = parse_line(line, profile, self.tz, reference)
            return fields if ts is None else (ts, fields)

        return parse


class ClassifierRegistry:
    """Typed registry: source id -> (classifier variant, hints)."""

    def __init__(self, sources: SourceRegistry, classifiers: list[Classifier] | None = None) -> None:
        self.sources = sources
        self._by_format: dict[str, Classifier] = {}
        for c in classifiers or []:
            self.register(c)

    def register(self, classifier: Classifier) -> None:
        self._by_format[classifier.format_name] = classifier

    def resolve(self, source_id: str) -> tuple[Classifier, SourceHints]:
        hints = self.sources.get(source_id)
        try:
            return self._by_format[hints.format], hints
        except KeyError:
            raise ConfigurationError(
                f"source '{source_id}' uses unsupported format '{hints.format}'"
            ) from None
