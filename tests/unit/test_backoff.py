# pylint: disable=missing-module-docstring,missing-function-docstring
from kairo_sync.channel.backoff import (
    FailureType,
    ReconnectPolicy,
    RetryAttempt,
    consumes_attempt,
    get_retry_delay_ms,
    next_attempt,
    reset_attempt,
    should_retry,
)


def test_delays_double_and_cap_at_five_seconds():
    policy = ReconnectPolicy()
    delays = [
        get_retry_delay_ms(policy=policy, attempt=RetryAttempt(attempt=n))
        for n in range(6)
    ]

    assert delays == [1_000, 2_000, 4_000, 5_000, 5_000, 5_000]


def test_huge_attempt_count_stays_capped():
    policy = ReconnectPolicy()
    assert get_retry_delay_ms(policy=policy, attempt=RetryAttempt(attempt=10_000)) == 5_000


def test_ten_attempts_then_stop():
    policy = ReconnectPolicy()
    attempt = reset_attempt()
    allowed = 0
    while should_retry(policy=policy, attempt=attempt):
        allowed += 1
        attempt = next_attempt(attempt)

    assert allowed == 10


def test_server_close_does_not_consume_an_attempt():
    assert consumes_attempt(FailureType.SERVER_CLOSED) is False
    assert consumes_attempt(FailureType.UNEXPECTED_DROP) is True
    assert consumes_attempt(FailureType.HANDSHAKE_ERROR) is True
