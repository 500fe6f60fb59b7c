import pytest

from roleprobe.backoff import (
    ErrorRecovery,
    TimeoutStrategy,
    attempt_budget,
    navigation_timeout,
    retry_delay,
)


class TestNavigationTimeout:

    def test_balanced_adds_a_second_per_retry(self):
        assert navigation_timeout(TimeoutStrategy.BALANCED, 15000, 1) == 15000
        assert navigation_timeout(TimeoutStrategy.BALANCED, 15000, 3) == 17000

    def test_patient_scales_with_attempt(self):
        assert navigation_timeout(TimeoutStrategy.PATIENT, 10000, 1) == 10000
        assert navigation_timeout(TimeoutStrategy.PATIENT, 10000, 3) == 30000

    def test_aggressive_halves_with_floor(self):
        assert navigation_timeout(TimeoutStrategy.AGGRESSIVE, 30000, 2) == 15000
        assert navigation_timeout(TimeoutStrategy.AGGRESSIVE, 6000, 1) == 5000

    def test_accepts_strategy_names(self):
        assert navigation_timeout("patient", 1000, 2) == 2000

    def test_attempts_are_one_based(self):
        with pytest.raises(ValueError):
            navigation_timeout(TimeoutStrategy.BALANCED, 1000, 0)


class TestRetryPolicy:

    def test_delay_is_linear(self):
        assert [retry_delay(1000, a) for a in (1, 2, 3)] == [1000, 2000, 3000]

    def test_delay_rejects_attempt_zero(self):
        with pytest.raises(ValueError):
            retry_delay(1000, 0)

    def test_skip_gets_one_attempt(self):
        assert attempt_budget(ErrorRecovery.SKIP, 5) == 1

    def test_retry_uses_configured_attempts(self):
        assert attempt_budget(ErrorRecovery.RETRY, 3) == 3
        assert attempt_budget("fallback", 0) == 1
