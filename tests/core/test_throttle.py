"""Tests for trickle.core.throttle."""

from trickle.core.throttle import Throttle


class MonotonicClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class CountingPredicate:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


class TestThrottle:
    def test_default_never_throttles(self):
        assert Throttle().throttled() is False

    def test_first_call_evaluates(self):
        predicate = CountingPredicate(True)
        throttle = Throttle(predicate, interval=5.0, clock=MonotonicClock())
        assert throttle.throttled() is True
        assert predicate.calls == 1

    def test_cached_within_interval(self):
        clock = MonotonicClock()
        predicate = CountingPredicate(True, False)
        throttle = Throttle(predicate, interval=5.0, clock=clock)

        assert throttle.throttled() is True
        clock.now += 4.9
        assert throttle.throttled() is True
        assert predicate.calls == 1

        clock.now += 0.1
        assert throttle.throttled() is False
        assert predicate.calls == 2

    def test_zero_interval_checks_every_time(self):
        predicate = CountingPredicate(False, True, False)
        throttle = Throttle(predicate, interval=0, clock=MonotonicClock())
        assert [throttle.throttled() for _ in range(3)] == [False, True, False]

    def test_predicate_error_keeps_previous_state(self):
        clock = MonotonicClock()
        predicate = CountingPredicate(True, RuntimeError("metrics down"))
        throttle = Throttle(predicate, interval=1.0, clock=clock)

        assert throttle.throttled() is True
        clock.now += 1
        assert throttle.throttled() is True

    def test_reset_forces_evaluation(self):
        predicate = CountingPredicate(True, False)
        throttle = Throttle(predicate, interval=60.0, clock=MonotonicClock())
        throttle.throttled()
        throttle.reset()
        assert throttle.throttled() is False
        assert predicate.calls == 2
