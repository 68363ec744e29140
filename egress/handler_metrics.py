"""Per-handler upload and backup metrics."""

from __future__ import annotations

import math
import threading
from collections.abc import Callable
from dataclasses import dataclass, field

from egress.metrics import Metric, MetricFamily

NAMESPACE = "livekit"
SUBSYSTEM = "egress"

UPLOADS_COUNTER = f"{NAMESPACE}_{SUBSYSTEM}_pipeline_uploads"
UPLOADS_RESPONSE_TIME = f"{NAMESPACE}_{SUBSYSTEM}_pipline_upload_response_time_ms"
BACKUP_COUNTER = f"{NAMESPACE}_{SUBSYSTEM}_backup_storage_writes"
SEGMENTS_CHANNEL_GAUGE = f"{NAMESPACE}_{SUBSYSTEM}_segments_uploads_channel_size"
PLAYLIST_CHANNEL_GAUGE = f"{NAMESPACE}_{SUBSYSTEM}_playlist_uploads_channel_size"

UPLOAD_BUCKETS: tuple[float, ...] = (
    10, 20, 50, 100, 200, 500, 1000, 2000, 5000, 10000, 15000, 20000, 30000,
)

_HELP = {
    UPLOADS_COUNTER: "Number of uploads per pipeline with type and status labels",
    UPLOADS_RESPONSE_TIME: "A histogram of latencies for upload requests in milliseconds.",
    BACKUP_COUNTER: "number of writes to backup storage location by output type",
    SEGMENTS_CHANNEL_GAUGE: "number of segment uploads pending in channel",
    PLAYLIST_CHANNEL_GAUGE: "number of playlist updates pending in channel",
}


def _le(bound: float) -> str:
    if math.isinf(bound):
        return "+Inf"
    text = repr(float(bound))
    return text[:-2] if text.endswith(".0") else text


@dataclass
class _Histogram:
    bounds: tuple[float, ...]
    cumulative: list[int] = field(default_factory=list)
    total: float = 0.0
    count: int = 0

    def __post_init__(self) -> None:
        self.cumulative = [0] * len(self.bounds)

    def observe(self, value: float) -> None:
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.cumulative[i] += 1
        self.total += value
        self.count += 1


@dataclass
class _GaugeFunc:
    labels: dict[str, str]
    function: Callable[[], float]


class HandlerMonitor:
    """Counts uploads, their latency and backup writes for one egress handler."""

    def __init__(self, node_id: str, cluster_id: str, egress_id: str) -> None:
        self._const = {"node_id": node_id, "cluster_id": cluster_id, "egress_id": egress_id}
        self._lock = threading.Lock()
        self._uploads: dict[tuple[str, str], float] = {}
        self._response_times: dict[tuple[str, str], _Histogram] = {}
        self._backups: dict[str, float] = {}
        self._gauges: dict[str, _GaugeFunc] = {}

    def _record_upload(self, upload_type: str, status: str, elapsed: float) -> None:
        key = (upload_type, status)
        with self._lock:
            self._uploads[key] = self._uploads.get(key, 0.0) + 1
            histogram = self._response_times.setdefault(key, _Histogram(UPLOAD_BUCKETS))
            histogram.observe(elapsed)

    def inc_upload_count_success(self, upload_type: str, elapsed: float) -> None:
        self._record_upload(upload_type, "success", elapsed)

    def inc_upload_count_failure(self, upload_type: str, elapsed: float) -> None:
        self._record_upload(upload_type, "failure", elapsed)

    def inc_backup_storage_writes(self, output_type: str) -> None:
        with self._lock:
            self._backups[output_type] = self._backups.get(output_type, 0.0) + 1

    def _register_gauge(
        self,
        name: str,
        node_id: str,
        cluster_id: str,
        egress_id: str,
        function: Callable[[], float],
    ) -> None:
        with self._lock:
            if name in self._gauges:
                raise ValueError(f"gauge {name} already registered")
            labels = {"node_id": node_id, "cluster_id": cluster_id, "egress_id": egress_id}
            self._gauges[name] = _GaugeFunc(labels, function)

    def register_segments_channel_size_gauge(
        self,
        node_id: str,
        cluster_id: str,
        egress_id: str,
        channel_size_function: Callable[[], float],
    ) -> None:
        self._register_gauge(SEGMENTS_CHANNEL_GAUGE, node_id, cluster_id, egress_id, channel_size_function)

    def register_playlist_channel_size_gauge(
        self,
        node_id: str,
        cluster_id: str,
        egress_id: str,
        channel_size_function: Callable[[], float],
    ) -> None:
        self._register_gauge(PLAYLIST_CHANNEL_GAUGE, node_id, cluster_id, egress_id, channel_size_function)

    def _labels(self, **extra: str) -> list[tuple[str, str]]:
        return sorted({**self._const, **extra}.items())

    def collect(self) -> list[MetricFamily]:
        """Return the current values of all metrics as families sorted by name."""
        with self._lock:
            uploads = dict(self._uploads)
            histograms = {
                key: (list(h.cumulative), h.total, h.count)
                for key, h in self._response_times.items()
            }
            backups = dict(self._backups)
            gauges = dict(self._gauges)

        families = [
            MetricFamily(
                name=UPLOADS_COUNTER,
                type="counter",
                help=_HELP[UPLOADS_COUNTER],
                metrics=[
                    Metric(UPLOADS_COUNTER, self._labels(type=t, status=s), value)
                    for (t, s), value in sorted(uploads.items())
                ],
            ),
            MetricFamily(
                name=BACKUP_COUNTER,
                type="counter",
                help=_HELP[BACKUP_COUNTER],
                metrics=[
                    Metric(BACKUP_COUNTER, self._labels(output_type=o), value)
                    for o, value in sorted(backups.items())
                ],
            ),
        ]

        histogram_metrics: list[Metric] = []
        for (t, s), (cumulative, total, count) in sorted(histograms.items()):
            base = self._labels(type=t, status=s)
            for bound, bucket in zip(UPLOAD_BUCKETS, cumulative):
                histogram_metrics.append(
                    Metric(f"{UPLOADS_RESPONSE_TIME}_bucket", [*base, ("le", _le(bound))], bucket)
                )
            histogram_metrics.append(
                Metric(f"{UPLOADS_RESPONSE_TIME}_bucket", [*base, ("le", "+Inf")], count)
            )
            histogram_metrics.append(Metric(f"{UPLOADS_RESPONSE_TIME}_sum", list(base), total))
            histogram_metrics.append(Metric(f"{UPLOADS_RESPONSE_TIME}_count", list(base), count))
        families.append(
            MetricFamily(
                name=UPLOADS_RESPONSE_TIME,
                type="histogram",
                help=_HELP[UPLOADS_RESPONSE_TIME],
                metrics=histogram_metrics,
            )
        )

        for name, gauge in gauges.items():
            families.append(
                MetricFamily(
                    name=name,
                    type="gauge",
                    help=_HELP[name],
                    metrics=[Metric(name, sorted(gauge.labels.items()), float(gauge.function()))],
                )
            )

        return sorted(families, key=lambda f: f.name)