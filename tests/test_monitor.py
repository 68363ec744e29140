import pytest

from egress.monitor import (
    GB,
    MIN_KILL_DURATION,
    CPUCostConfig,
    CPUExhaustedError,
    EgressAlreadyExistsError,
    EgressError,
    Monitor,
    NotEnoughCPUError,
    OOMError,
    ProcStats,
)
from egress.types import RequestType, StartEgressRequest


class FakeService:
    def __init__(self, idle=True, disabled=False, terminating=False):
        self.idle = idle
        self.disabled = disabled
        self.terminating = terminating
        self.killed = []

    def is_idle(self):
        return self.idle

    def is_disabled(self):
        return self.disabled

    def is_terminating(self):
        return self.terminating

    def kill_process(self, egress_id, err):
        self.killed.append((egress_id, err))


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def make_config(**overrides):
    values = dict(
        room_composite_cpu_cost=3.0,
        audio_room_composite_cpu_cost=1.0,
        web_cpu_cost=3.0,
        audio_web_cpu_cost=1.0,
        participant_cpu_cost=2.0,
        track_composite_cpu_cost=2.0,
        track_cpu_cost=1.0,
        max_cpu_utilization=0.8,
        max_concurrent_web=2,
    )
    values.update(overrides)
    return CPUCostConfig(**values)


def make_monitor(num_cpu=8, svc=None, clock=None, **overrides):
    return Monitor(
        "node",
        "cluster",
        make_config(**overrides),
        svc or FakeService(),
        num_cpu=num_cpu,
        clock=clock or FakeClock(),
    )


def req(egress_id, request_type, audio_only=False, estimated_cpu=0.0):
    return StartEgressRequest(
        egress_id=egress_id, request_type=request_type, audio_only=audio_only, estimated_cpu=estimated_cpu
    )


def test_not_enough_cpu_for_cheapest_request_raises():
    with pytest.raises(EgressError):
        make_monitor(num_cpu=0.5)


def test_idle_node_reports_all_cpu():
    monitor = make_monitor(num_cpu=8)
    assert monitor.get_available_cpu() == 8


def test_accept_reserves_cost():
    monitor = make_monitor(num_cpu=8)
    monitor.accept_request(req("EG_1", RequestType.TRACK))
    assert monitor.get_available_cpu() == pytest.approx(8 * 0.8 - 1.0)
    assert monitor.requests == 1


def test_duplicate_request_rejected():
    monitor = make_monitor()
    monitor.accept_request(req("EG_1", RequestType.TRACK))
    with pytest.raises(EgressAlreadyExistsError):
        monitor.accept_request(req("EG_1", RequestType.TRACK))


def test_not_enough_cpu_rejected():
    monitor = make_monitor(num_cpu=4)
    monitor.accept_request(req("EG_1", RequestType.PARTICIPANT))
    assert not monitor.can_accept_request(req("EG_2", RequestType.PARTICIPANT))
    with pytest.raises(NotEnoughCPUError):
        monitor.accept_request(req("EG_2", RequestType.PARTICIPANT))


def test_estimated_cpu_overrides_cost():
    monitor = make_monitor(num_cpu=4)
    assert monitor.can_accept_request(req("EG_1", RequestType.TRACK, estimated_cpu=3.5))
    monitor.accept_request(req("EG_0", RequestType.TRACK))
    assert not monitor.can_accept_request(req("EG_1", RequestType.TRACK, estimated_cpu=3.5))


def test_web_concurrency_limit_and_abort():
    monitor = make_monitor(num_cpu=32, max_concurrent_web=1)
    room = req("EG_1", RequestType.ROOM_COMPOSITE)
    monitor.accept_request(room)
    assert not monitor.can_accept_web_request()
    assert not monitor.can_accept_request(req("EG_2", RequestType.WEB))
    monitor.egress_aborted(room)
    assert monitor.can_accept_web_request()
    assert monitor.requests == 0
    assert monitor.get_available_cpu() == 32


def test_cpu_hold_expires():
    clock = FakeClock()
    monitor = make_monitor(num_cpu=8, clock=clock)
    monitor.accept_request(req("EG_1", RequestType.TRACK))
    reserved = monitor.get_available_cpu()
    clock.now += 31
    assert monitor.get_available_cpu() == pytest.approx(8 * 0.8)
    assert monitor.get_available_cpu() > reserved


def test_usage_tracked_through_end():
    monitor = make_monitor(num_cpu=8)
    request = req("EG_1", RequestType.TRACK)
    monitor.accept_request(request)
    monitor.update_pid("EG_1", 42)
    monitor.update_egress_stats(ProcStats(cpu_idle=7.0, cpu={42: 2.0}, memory={42: 500}))
    monitor.update_egress_stats(ProcStats(cpu_idle=7.0, cpu={42: 4.0}, memory={42: 300}))
    avg, max_cpu, max_mem = monitor.egress_ended(request)
    assert avg == pytest.approx(3.0)
    assert max_cpu == 4.0
    assert max_mem == 500
    assert monitor.requests == 0
    assert monitor.egress_ended(request) == (0.0, 0.0, 0)


def test_last_cpu_counts_against_available():
    monitor = make_monitor(num_cpu=8)
    clock_free = monitor.get_available_cpu()
    monitor.accept_request(req("EG_1", RequestType.TRACK))
    monitor.update_pid("EG_1", 7)
    monitor.update_egress_stats(ProcStats(cpu_idle=3.0, cpu={7: 5.0}))
    assert monitor.get_available_cpu() == pytest.approx(8 * 0.8 - 5.0)
    assert monitor.get_available_cpu() < clock_free


def test_cpu_load_gauge():
    monitor = make_monitor(num_cpu=8)
    monitor.update_egress_stats(ProcStats(cpu_idle=8.0))
    assert monitor.cpu_load == 0.0


def test_high_cpu_kills_worst_offender():
    svc = FakeService()
    monitor = make_monitor(num_cpu=8, svc=svc)
    monitor.accept_request(req("EG_1", RequestType.TRACK))
    monitor.accept_request(req("EG_2", RequestType.TRACK))
    monitor.update_pid("EG_1", 1)
    monitor.update_pid("EG_2", 2)
    sample = ProcStats(cpu_idle=0.0, cpu={1: 1.5, 2: 6.0})
    for _ in range(MIN_KILL_DURATION - 1):
        monitor.update_egress_stats(sample)
    assert svc.killed == []
    monitor.update_egress_stats(sample)
    assert len(svc.killed) == 1
    egress_id, err = svc.killed[0]
    assert egress_id == "EG_2"
    assert isinstance(err, CPUExhaustedError)
    assert err.usage == 6.0


def test_high_cpu_single_request_not_killed():
    svc = FakeService()
    monitor = make_monitor(num_cpu=8, svc=svc)
    monitor.accept_request(req("EG_1", RequestType.TRACK))
    monitor.update_pid("EG_1", 1)
    for _ in range(MIN_KILL_DURATION * 2):
        monitor.update_egress_stats(ProcStats(cpu_idle=0.0, cpu={1: 8.0}))
    assert svc.killed == []


def test_memory_limit_kills_largest():
    svc = FakeService()
    monitor = make_monitor(num_cpu=8, svc=svc, max_memory=1.0)
    monitor.accept_request(req("EG_1", RequestType.TRACK))
    monitor.accept_request(req("EG_2", RequestType.TRACK))
    monitor.update_pid("EG_1", 1)
    monitor.update_pid("EG_2", 2)
    monitor.update_egress_stats(
        ProcStats(cpu_idle=8.0, memory={1: int(0.4 * GB), 2: int(0.9 * GB)})
    )
    assert len(svc.killed) == 1
    assert svc.killed[0][0] == "EG_2"
    assert isinstance(svc.killed[0][1], OOMError)


def test_update_pid_without_pending_uses_web_cost():
    svc = FakeService()
    monitor = make_monitor(num_cpu=8, svc=svc)
    monitor.accept_request(req("EG_0", RequestType.TRACK))
    monitor.accept_request(req("EG_1", RequestType.TRACK))
    monitor.update_pid("EG_0", 10)
    monitor.update_pid("EG_X", 11)
    # EG_X is allowed the web cost, so only EG_0 exceeds its allowance
    sample = ProcStats(cpu_idle=0.0, cpu={10: 2.0, 11: 2.5})
    for _ in range(MIN_KILL_DURATION):
        monitor.update_egress_stats(sample)
    assert [k[0] for k in svc.killed] == ["EG_0"]


def test_request_gauge_counts():
    monitor = make_monitor(num_cpu=16)
    request = req("EG_1", RequestType.PARTICIPANT)
    monitor.accept_request(request)
    monitor.egress_started(request)
    assert monitor.request_gauge[RequestType.PARTICIPANT] == 1
    monitor.egress_ended(request)
    assert monitor.request_gauge[RequestType.PARTICIPANT] == 0


def test_prom_flags_follow_service():
    svc = FakeService(idle=True, disabled=False, terminating=True)
    monitor = make_monitor(svc=svc)
    assert monitor.prom_is_idle() == 1.0
    assert monitor.prom_is_disabled() == 0.0
    assert monitor.prom_is_terminating() == 1.0
    assert monitor.prom_can_accept_request() == 1.0
    svc.disabled = True
    svc.idle = False
    assert monitor.prom_can_accept_request() == 0.0
    assert monitor.prom_is_disabled() == 1.0
    assert monitor.prom_is_idle() == 0.0


def test_prom_can_accept_respects_web_limit():
    monitor = make_monitor(num_cpu=32, max_concurrent_web=1)
    monitor.accept_request(req("EG_1", RequestType.WEB))
    assert monitor.prom_can_accept_request() == 0.0