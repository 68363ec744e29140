"""Prometheus text-format metric families and the service that aggregates them."""

from __future__ import annotations

import logging
import math
import re
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

logger = logging.getLogger(__name__)

EGRESS_ID_LABEL = "egress_id"

METRIC_TYPES = frozenset({"counter", "gauge", "histogram", "summary", "untyped"})

_METRIC_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_LABEL_ESCAPES = {"n": "\n", "\\": "\\", '"': '"'}


@dataclass
class Metric:
    """A single sample: its name, ordered labels, value and optional timestamp in ms."""

    name: str
    labels: list[tuple[str, str]] = field(default_factory=list)
    value: float = 0.0
    timestamp: int | None = None

    def label(self, name: str) -> str | None:
        """Return the value of a label, or None if the sample has no such label."""
        return next((value for key, value in self.labels if key == name), None)


@dataclass
class MetricFamily:
    """A named group of samples sharing a type and help text."""

    name: str
    type: str = "untyped"
    help: str = ""
    metrics: list[Metric] = field(default_factory=list)


class Gatherer(Protocol):
    def gather(self) -> list[MetricFamily]: ...


class GathererSource(Protocol):
    def get_gatherers(self) -> list[Gatherer]: ...


def _skip_spaces(line: str, pos: int) -> int:
    while pos < len(line) and line[pos] in " \t":
        pos += 1
    return pos


def _parse_labels(line: str, pos: int, lineno: int) -> tuple[list[tuple[str, str]], int]:
    """Parse a label set starting at the opening brace; return labels and the next position."""
    labels: list[tuple[str, str]] = []
    seen: set[str] = set()
    pos += 1
    while True:
        pos = _skip_spaces(line, pos)
        if line[pos:pos + 1] == "}":
            return labels, pos + 1
        match = _LABEL_NAME.match(line, pos)
        if match is None:
            raise ValueError(f"line {lineno}: invalid label name")
        name = match.group()
        if name in seen:
            raise ValueError(f"line {lineno}: duplicate label {name!r}")
        seen.add(name)
        pos = _skip_spaces(line, match.end())
        if line[pos:pos + 1] != "=":
            raise ValueError(f"line {lineno}: expected '=' after label {name!r}")
        pos = _skip_spaces(line, pos + 1)
        if line[pos:pos + 1] != '"':
            raise ValueError(f"line {lineno}: expected quoted value for label {name!r}")
        pos += 1
        chars: list[str] = []
        while True:
            if pos >= len(line):
                raise ValueError(f"line {lineno}: unterminated label value")
            char = line[pos]
            if char == "\\":
                escaped = _LABEL_ESCAPES.get(line[pos + 1:pos + 2])
                if escaped is None:
                    raise ValueError(f"line {lineno}: invalid escape in label value")
                chars.append(escaped)
                pos += 2
            elif char == '"':
                pos += 1
                break
            else:
                chars.append(char)
                pos += 1
        labels.append((name, "".join(chars)))
        pos = _skip_spaces(line, pos)
        if line[pos:pos + 1] == ",":
            pos += 1
        elif line[pos:pos + 1] != "}":
            raise ValueError(f"line {lineno}: expected ',' or '}}' in label set")


def _parse_sample(line: str, lineno: int) -> Metric:
    match = _METRIC_NAME.match(line)
    if match is None:
        raise ValueError(f"line {lineno}: invalid metric name")
    name = match.group()
    pos = match.end()
    labels: list[tuple[str, str]] = []
    if line[pos:pos + 1] == "{":
        labels, pos = _parse_labels(line, pos, lineno)
    elif pos < len(line) and line[pos] not in " \t":
        raise ValueError(f"line {lineno}: invalid character after metric name")
    tokens = line[pos:].split()
    if len(tokens) not in (1, 2):
        raise ValueError(f"line {lineno}: expected a value and an optional timestamp")
    try:
        value = float(tokens[0])
        timestamp = int(tokens[1]) if len(tokens) == 2 else None
    except ValueError as exc:
        raise ValueError(f"line {lineno}: {exc}") from exc
    return Metric(name=name, labels=labels, value=value, timestamp=timestamp)


def _family_for(sample_name: str, families: Mapping[str, MetricFamily]) -> str:
    if sample_name in families:
        return sample_name
    for suffix, kinds in (
        ("_bucket", ("histogram",)),
        ("_sum", ("histogram", "summary")),
        ("_count", ("histogram", "summary")),
    ):
        if sample_name.endswith(suffix):
            base = families.get(sample_name[: -len(suffix)])
            if base is not None and base.type in kinds:
                return base.name
    return sample_name


def _unescape_help(text: str) -> str:
    out: list[str] = []
    chars = iter(text)
    for char in chars:
        if char == "\\":
            nxt = next(chars, "")
            out.append({"n": "\n", "\\": "\\"}.get(nxt, "\\" + nxt))
        else:
            out.append(char)
    return "".join(out)


def parse_metric_families(text: str) -> dict[str, MetricFamily]:
    """Parse Prometheus text exposition format into families keyed by name.

    Raises ValueError on malformed input.
    """
    families: dict[str, MetricFamily] = {}
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            parts = line[1:].strip().split(None, 2)
            if len(parts) < 2 or parts[0] not in ("HELP", "TYPE"):
                continue
            keyword, name = parts[0], parts[1]
            rest = parts[2] if len(parts) > 2 else ""
            if _METRIC_NAME.fullmatch(name) is None:
                raise ValueError(f"line {lineno}: invalid metric name {name!r}")
            family = families.setdefault(name, MetricFamily(name))
            if keyword == "HELP":
                family.help = _unescape_help(rest)
            else:
                if rest not in METRIC_TYPES:
                    raise ValueError(f"line {lineno}: unknown metric type {rest!r}")
                if family.metrics:
                    raise ValueError(f"line {lineno}: TYPE for {name!r} after its samples")
                family.type = rest
            continue
        metric = _parse_sample(line, lineno)
        family_name = _family_for(metric.name, families)
        families.setdefault(family_name, MetricFamily(family_name)).metrics.append(metric)
    return families


def _format_value(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    text = repr(float(value))
    return text[:-2] if text.endswith(".0") else text


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _families(families: Mapping[str, MetricFamily] | Iterable[MetricFamily]) -> list[MetricFamily]:
    if isinstance(families, Mapping):
        return list(families.values())
    return list(families)


def render_metric_families(
    families: Mapping[str, MetricFamily] | Iterable[MetricFamily],
) -> str:
    """Render families in Prometheus text exposition format."""
    lines: list[str] = []
    for family in _families(families):
        if family.help:
            lines.append(f"# HELP {family.name} {_escape_help(family.help)}")
        lines.append(f"# TYPE {family.name} {family.type}")
        for metric in family.metrics:
            sample = metric.name
            if metric.labels:
                rendered = ",".join(f'{k}="{_escape_label(v)}"' for k, v in metric.labels)
                sample += "{" + rendered + "}"
            sample += " " + _format_value(metric.value)
            if metric.timestamp is not None:
                sample += f" {metric.timestamp}"
            lines.append(sample)
    return "\n".join(lines) + "\n" if lines else ""


def apply_default_label(
    egress_id: str,
    families: Mapping[str, MetricFamily] | Iterable[MetricFamily],
) -> None:
    """Add an egress_id label to every sample that does not already carry one."""
    for family in _families(families):
        for metric in family.metrics:
            if all(name != EGRESS_ID_LABEL for name, _ in metric.labels):
                metric.labels.append((EGRESS_ID_LABEL, egress_id))


def deserialize_metrics(egress_id: str, text: str) -> list[MetricFamily]:
    """Parse a handler's metrics and tag them with its egress id.

    Unparseable input is logged and yields no families.
    """
    try:
        families = parse_metric_families(text)
    except ValueError as exc:
        logger.warning("failed to parse metrics from handler %s: %s", egress_id, exc)
        return []
    apply_default_label(egress_id, families)
    return list(families.values())


class MetricsService:
    """Collects metrics from running handlers and from handlers that have ended."""

    def __init__(self, pm: GathererSource, gatherers: Iterable[Gatherer] = ()) -> None:
        self._pm = pm
        self._gatherers = list(gatherers)
        self._lock = threading.Lock()
        self._pending: list[MetricFamily] = []

    def store_process_ended_metrics(self, egress_id: str, metrics: str) -> None:
        """Keep an ended handler's final metrics until the next gather."""
        families = deserialize_metrics(egress_id, metrics)
        with self._lock:
            self._pending.extend(families)

    def gather(self) -> list[MetricFamily]:
        """Merge all sources into families sorted by name; pending metrics are consumed."""
        with self._lock:
            pending, self._pending = self._pending, []

        sources: list[Iterable[MetricFamily]] = [g.gather() for g in self._gatherers]
        sources.append(pending)
        sources.extend(g.gather() for g in self._pm.get_gatherers())

        merged: dict[str, MetricFamily] = {}
        for families in sources:
            for family in families:
                existing = merged.get(family.name)
                if existing is None:
                    merged[family.name] = MetricFamily(
                        name=family.name,
                        type=family.type,
                        help=family.help,
                        metrics=list(family.metrics),
                    )
                else:
                    existing.metrics.extend(family.metrics)
        return [merged[name] for name in sorted(merged)]

    def render(self) -> str:
        """Gather and render everything in text exposition format."""
        return render_metric_families(self.gather())


def _as_dict(family: MetricFamily) -> dict[str, Any]:
    return {"name": family.name, "type": family.type, "samples": len(family.metrics)}