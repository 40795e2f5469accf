from genworker.circuit import CircuitBreakerRegistry, CircuitStatus


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _registry():
    clock = FakeClock()
    return CircuitBreakerRegistry(threshold=5, reset_timeout=30, clock=clock), clock


def test_five_failures_open_and_refuse_without_counting():
    circuits, clock = _registry()
    for _ in range(4):
        circuits.record_failure("p")
        assert circuits.allow("p")
    circuits.record_failure("p")

    assert circuits.get("p").state == CircuitStatus.OPEN
    clock.advance(10)
    assert not circuits.allow("p")
    assert circuits.get("p").failures == 5


def test_success_after_reset_timeout_closes_and_zeroes():
    circuits, clock = _registry()
    for _ in range(5):
        circuits.record_failure("p")
    clock.advance(30)

    assert circuits.allow("p")
    assert circuits.get("p").state == CircuitStatus.HALF_OPEN
    circuits.record_success("p")

    state = circuits.get("p")
    assert state.state == CircuitStatus.CLOSED
    assert state.failures == 0


def test_half_open_admits_a_single_probe():
    circuits, clock = _registry()
    for _ in range(5):
        circuits.record_failure("p")
    clock.advance(31)

    assert circuits.allow("p")
    assert not circuits.allow("p")
    # a probe that never reports back is replaced after another timeout
    clock.advance(30)
    assert circuits.allow("p")


def test_failed_probe_reopens_and_restarts_timer():
    circuits, clock = _registry()
    for _ in range(5):
        circuits.record_failure("p")
    clock.advance(31)
    assert circuits.allow("p")

    circuits.record_failure("p")
    assert circuits.get("p").state == CircuitStatus.OPEN
    clock.advance(29)
    assert not circuits.allow("p")
    clock.advance(1)
    assert circuits.allow("p")


def test_any_success_resets_the_counter():
    circuits, _ = _registry()
    for _ in range(4):
        circuits.record_failure("p")
    circuits.record_success("p")
    circuits.record_failure("p")
    assert circuits.get("p").failures == 1
    assert circuits.allow("p")


def test_providers_are_isolated():
    circuits, _ = _registry()
    for _ in range(5):
        circuits.record_failure("bad")
    assert not circuits.allow("bad")
    assert circuits.allow("good")
    assert set(circuits.snapshot()) == {"bad", "good"}
