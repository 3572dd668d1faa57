import pytest

from kubestrap.errors import RetryExhausted, TimeoutFailure, TransientRemoteFailure
from kubestrap.utils.retry import RetryPolicy, WaitPolicy, poll_until, run_with_retry


def _flaky(failures, result="ok"):
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise TransientRemoteFailure(f"boom {calls['n']}", rc=1)
        return result

    return fn, calls


def test_succeeds_on_third_attempt_with_recovery_before_each_delay():
    order = []
    fn, calls = _flaky(2)
    out = run_with_retry(
        fn,
        RetryPolicy(max_attempts=5, delay_seconds=30),
        action="kubeadm init",
        recover=lambda: order.append("recover"),
        sleep=lambda s: order.append(("sleep", s)),
    )
    assert out == "ok"
    assert calls["n"] == 3
    assert order == ["recover", ("sleep", 30), "recover", ("sleep", 30)]


def test_never_makes_an_extra_call_after_budget_is_spent():
    fn, calls = _flaky(100)
    slept = []
    retried = []
    with pytest.raises(RetryExhausted) as ei:
        run_with_retry(
            fn,
            RetryPolicy(max_attempts=5, delay_seconds=30),
            action="kubeadm join",
            on_retry=lambda attempt, exc: retried.append(attempt),
            sleep=slept.append,
        )
    assert calls["n"] == 5
    assert ei.value.attempts == 5
    assert "boom 5" in str(ei.value.last_error)
    assert isinstance(ei.value.__cause__, TransientRemoteFailure)
    # no delay after the final failure
    assert slept == [30] * 4
    # the final failure is not followed by a retry
    assert retried == [1, 2, 3, 4]


def test_timeouts_are_not_retried():
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        raise TimeoutFailure("session", 1200)

    with pytest.raises(TimeoutFailure):
        run_with_retry(fn, RetryPolicy(max_attempts=5, delay_seconds=0), action="x", sleep=lambda s: None)
    assert calls["n"] == 1


def test_failed_recovery_does_not_end_the_retry_loop():
    fn, calls = _flaky(1)

    def recover():
        raise TransientRemoteFailure("kubelet restart failed")

    assert run_with_retry(fn, RetryPolicy(max_attempts=3, delay_seconds=0), action="x",
                          recover=recover, sleep=lambda s: None) == "ok"
    assert calls["n"] == 2


def test_backoff_multiplies_delay():
    p = RetryPolicy(max_attempts=4, delay_seconds=2, backoff=2.0)
    assert [p.delay_for(i) for i in (1, 2, 3)] == [2, 4, 8]


def test_policies_reject_nonsense_bounds():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        WaitPolicy(interval_seconds=5, timeout_seconds=0)


def test_poll_until_counts_probes_and_treats_remote_errors_as_not_yet(fake_clock):
    answers = [TransientRemoteFailure("conn refused"), False, True]

    def predicate():
        a = answers.pop(0)
        if isinstance(a, Exception):
            raise a
        return a

    slept = []
    probes = poll_until(predicate, WaitPolicy(5, 600), what="api", sleep=slept.append, clock=fake_clock())
    assert probes == 3
    assert slept == [5, 5]


def test_poll_until_is_bounded(fake_clock):
    slept = []
    with pytest.raises(TimeoutFailure) as ei:
        poll_until(lambda: False, WaitPolicy(5, 10), what="node Ready", sleep=slept.append, clock=fake_clock())
    assert ei.value.what == "node Ready"
    assert ei.value.timeout_s == 10
    assert len(slept) < 10
