"""CPU and memory accounting used to admit, track and kill egress processes."""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from egress.types import RequestType, StartEgressRequest

logger = logging.getLogger(__name__)

CPU_HOLD_DURATION = 30.0
DEFAULT_KILL_THRESHOLD = 0.95
MIN_KILL_DURATION = 10
GB = 1024.0 * 1024.0 * 1024.0


class EgressError(Exception):
    """Base class for egress service errors."""


class EgressAlreadyExistsError(EgressError):
    def __init__(self) -> None:
        super().__init__("egress already exists")


class NotEnoughCPUError(EgressError):
    def __init__(self) -> None:
        super().__init__("not enough CPU")


class CPUExhaustedError(EgressError):
    def __init__(self, usage: float) -> None:
        super().__init__(f"CPU exhausted: {usage:.2f} cores used")
        self.usage = usage


class OOMError(EgressError):
    def __init__(self, usage_gb: float) -> None:
        super().__init__(f"out of memory: {usage_gb:.2f} GB used")
        self.usage_gb = usage_gb


@dataclass
class CPUCostConfig:
    """CPU cost per request type and resource limits for the node."""

    room_composite_cpu_cost: float = 0.0
    audio_room_composite_cpu_cost: float = 0.0
    web_cpu_cost: float = 0.0
    audio_web_cpu_cost: float = 0.0
    participant_cpu_cost: float = 0.0
    track_composite_cpu_cost: float = 0.0
    track_cpu_cost: float = 0.0
    max_cpu_utilization: float = 0.8
    max_memory: float = 0.0
    max_concurrent_web: int = 0

    def cost(self, req: StartEgressRequest) -> float:
        """CPU held for a request of this type."""
        match req.request_type:
            case RequestType.ROOM_COMPOSITE:
                return (
                    self.audio_room_composite_cpu_cost
                    if req.audio_only
                    else self.room_composite_cpu_cost
                )
            case RequestType.WEB:
                return self.audio_web_cpu_cost if req.audio_only else self.web_cpu_cost
            case RequestType.PARTICIPANT:
                return self.participant_cpu_cost
            case RequestType.TRACK_COMPOSITE:
                return self.track_composite_cpu_cost
            case RequestType.TRACK:
                return self.track_cpu_cost
        return 0.0

    def all_costs(self) -> list[float]:
        return [
            self.room_composite_cpu_cost,
            self.audio_room_composite_cpu_cost,
            self.web_cpu_cost,
            self.audio_web_cpu_cost,
            self.participant_cpu_cost,
            self.track_composite_cpu_cost,
            self.track_cpu_cost,
        ]


@dataclass
class ProcStats:
    """A sample of host usage: idle cores, and cpu and memory per pid."""

    cpu_idle: float
    cpu: dict[int, float] = field(default_factory=dict)
    memory: dict[int, int] = field(default_factory=dict)


class MonitorService(Protocol):
    def is_idle(self) -> bool: ...

    def is_disabled(self) -> bool: ...

    def is_terminating(self) -> bool: ...

    def kill_process(self, egress_id: str, err: Exception) -> None: ...


@dataclass
class _ProcessStats:
    egress_id: str
    pending_cpu: float = 0.0
    hold_until: float = 0.0
    last_cpu: float = 0.0
    allowed_cpu: float = 0.0
    total_cpu: float = 0.0
    cpu_counter: int = 0
    max_cpu: float = 0.0
    max_memory: int = 0

    def current_pending(self, now: float) -> float:
        return self.pending_cpu if now < self.hold_until else 0.0

    def reserved(self, now: float) -> float:
        return max(self.current_pending(now), self.last_cpu)


class Monitor:
    """Tracks CPU reservations and usage of egress processes on this node."""

    def __init__(
        self,
        node_id: str,
        cluster_id: str,
        cpu_cost_config: CPUCostConfig,
        svc: MonitorService,
        num_cpu: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        cpu_hold_duration: float = CPU_HOLD_DURATION,
    ) -> None:
        self.node_id = node_id
        self.cluster_id = cluster_id
        self.cpu_cost_config = cpu_cost_config
        self.svc = svc
        self.num_cpu = float(num_cpu if num_cpu is not None else (os.cpu_count() or 1))
        self._clock = clock
        self._cpu_hold_duration = cpu_hold_duration

        self._lock = threading.Lock()
        self.requests = 0
        self.web_requests = 0
        self._high_cpu_duration = 0
        self._pending: dict[str, _ProcessStats] = {}
        self._proc_stats: dict[int, _ProcessStats] = {}

        self.cpu_load = 0.0
        self.request_gauge: dict[RequestType, float] = {t: 0.0 for t in RequestType}

        self._validate_cpu_config()

    def _validate_cpu_config(self) -> None:
        requirements = sorted(self.cpu_cost_config.all_costs())
        minimum, maximum = requirements[0], requirements[-1]
        recommended = max(maximum, 3.0)
        if self.num_cpu < minimum:
            logger.error(
                "not enough cpu: minimum %s, recommended %s, available %s",
                minimum, recommended, self.num_cpu,
            )
            raise EgressError("not enough cpu")
        if self.num_cpu < maximum:
            logger.error(
                "not enough cpu for some egress types: minimum %s, recommended %s, available %s",
                maximum, recommended, self.num_cpu,
            )
        logger.info("cpu available: %f max cost: %f", self.num_cpu, maximum)

    def can_accept_web_request(self) -> bool:
        return self.web_requests < self.cpu_cost_config.max_concurrent_web

    def can_accept_request(self, req: StartEgressRequest) -> bool:
        with self._lock:
            fields, accept = self._can_accept_locked(req)
        logger.debug("cpu check %s", fields)
        return accept

    def _can_accept_locked(self, req: StartEgressRequest) -> tuple[dict[str, object], bool]:
        total, available, pending, used = self._cpu_usage_locked()
        fields: dict[str, object] = {
            "total": total,
            "available": available,
            "pending": pending,
            "used": used,
            "activeRequests": self.requests,
            "activeWeb": self.web_requests,
        }
        if req.request_type.is_web and self.web_requests >= self.cpu_cost_config.max_concurrent_web:
            return fields, False

        required = req.estimated_cpu or self.cpu_cost_config.cost(req)
        accept = available >= required
        fields["required"] = required
        fields["canAccept"] = accept
        return fields, accept

    def accept_request(self, req: StartEgressRequest) -> None:
        """Reserve CPU for a request, raising if it cannot be accepted."""
        with self._lock:
            if req.egress_id in self._pending:
                raise EgressAlreadyExistsError()
            _, accept = self._can_accept_locked(req)
            if not accept:
                logger.warning("can not accept request")
                raise NotEnoughCPUError()

            self.requests += 1
            if req.request_type.is_web:
                self.web_requests += 1
            hold = self.cpu_cost_config.cost(req)
            self._pending[req.egress_id] = _ProcessStats(
                egress_id=req.egress_id,
                pending_cpu=hold,
                hold_until=self._clock() + self._cpu_hold_duration,
                allowed_cpu=hold,
            )

    def update_pid(self, egress_id: str, pid: int) -> None:
        """Move a pending reservation onto the process that now runs it."""
        with self._lock:
            ps = self._pending.pop(egress_id, None)
            if ps is None:
                logger.warning("missing pending procStats for %s", egress_id)
                ps = _ProcessStats(egress_id=egress_id, allowed_cpu=self.cpu_cost_config.web_cpu_cost)
            existing = self._proc_stats.get(pid)
            if existing is not None:
                ps.max_cpu = existing.max_cpu
                ps.total_cpu = existing.total_cpu
                ps.cpu_counter = existing.cpu_counter
            self._proc_stats[pid] = ps

    def egress_aborted(self, req: StartEgressRequest) -> None:
        with self._lock:
            self._pending.pop(req.egress_id, None)
            self.requests -= 1
            if req.request_type.is_web:
                self.web_requests -= 1

    def egress_started(self, req: StartEgressRequest) -> None:
        with self._lock:
            self.request_gauge[req.request_type] += 1

    def egress_ended(self, req: StartEgressRequest) -> tuple[float, float, int]:
        """Release an egress; return its (average cpu, max cpu, max memory)."""
        with self._lock:
            self.request_gauge[req.request_type] -= 1
            if req.request_type.is_web:
                self.web_requests -= 1
            self._pending.pop(req.egress_id, None)
            self.requests -= 1

            for pid, ps in list(self._proc_stats.items()):
                if ps.egress_id == req.egress_id:
                    del self._proc_stats[pid]
                    avg = ps.total_cpu / ps.cpu_counter if ps.cpu_counter else 0.0
                    return avg, ps.max_cpu, ps.max_memory
        return 0.0, 0.0, 0

    def get_available_cpu(self) -> float:
        with self._lock:
            return self._cpu_usage_locked()[1]

    def _cpu_usage_locked(self) -> tuple[float, float, float, float]:
        total = self.num_cpu
        if self.requests == 0:
            return total, total, 0.0, 0.0
        now = self._clock()
        pending = sum(ps.reserved(now) for ps in self._pending.values())
        used = sum(ps.reserved(now) for ps in self._proc_stats.values())
        available = total * self.cpu_cost_config.max_cpu_utilization - pending - used
        return total, available, pending, used

    def update_egress_stats(self, stats: ProcStats) -> None:
        """Record a usage sample and kill an egress if cpu or memory run out."""
        load = 1 - stats.cpu_idle / self.num_cpu
        self.cpu_load = load

        with self._lock:
            max_cpu = 0.0
            max_cpu_egress = ""
            for pid, usage in stats.cpu.items():
                ps = self._proc_stats.get(pid)
                if ps is None:
                    continue
                ps.last_cpu = usage
                ps.total_cpu += usage
                ps.cpu_counter += 1
                ps.max_cpu = max(ps.max_cpu, usage)
                if usage > ps.allowed_cpu and usage > max_cpu:
                    max_cpu = usage
                    max_cpu_egress = ps.egress_id

            kill_threshold = DEFAULT_KILL_THRESHOLD
            if kill_threshold <= self.cpu_cost_config.max_cpu_utilization:
                kill_threshold = (1 + self.cpu_cost_config.max_cpu_utilization) / 2

            if load > kill_threshold:
                logger.warning("high cpu usage: cpu %s, requests %s", load, self.requests)
                if self.requests > 1:
                    self._high_cpu_duration += 1
                    if self._high_cpu_duration >= MIN_KILL_DURATION:
                        self.svc.kill_process(max_cpu_egress, CPUExhaustedError(max_cpu))
                        self._high_cpu_duration = 0

            total_memory = 0
            max_memory = 0
            max_memory_egress = ""
            for pid, mem in stats.memory.items():
                total_memory += mem
                ps = self._proc_stats.get(pid)
                if ps is None:
                    continue
                ps.max_memory = max(ps.max_memory, mem)
                if mem > max_memory:
                    max_memory = mem
                    max_memory_egress = ps.egress_id

            limit = self.cpu_cost_config.max_memory
            if limit > 0 and total_memory > int(limit * GB):
                logger.warning(
                    "high memory usage: memory %s GB, requests %s", total_memory / GB, self.requests
                )
                self.svc.kill_process(max_memory_egress, OOMError(max_memory / GB))

    def prom_is_idle(self) -> float:
        return 1.0 if self.svc.is_idle() else 0.0

    def prom_can_accept_request(self) -> float:
        probe = StartEgressRequest(egress_id="", request_type=RequestType.WEB)
        with self._lock:
            _, accept = self._can_accept_locked(probe)
        return 1.0 if not self.svc.is_disabled() and accept else 0.0

    def prom_is_disabled(self) -> float:
        return 1.0 if self.svc.is_disabled() else 0.0

    def prom_is_terminating(self) -> float:
        return 1.0 if self.svc.is_terminating() else 0.0