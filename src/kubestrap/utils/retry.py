# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from kubestrap.errors import RetryExhausted, TimeoutFailure, TransientRemoteFailure

log = logging.getLogger("kubestrap")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry for a remote action.

    max_attempts: total number of calls, never exceeded
    delay_seconds: wait before the next attempt
    backoff: multiplier applied to the delay after each failure (1.0 = fixed)
    """

    max_attempts: int = 5
    delay_seconds: float = 30.0
    backoff: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")

    def delay_for(self, attempt: int) -> float:
        return self.delay_seconds * (self.backoff ** (attempt - 1))


@dataclass(frozen=True)
class WaitPolicy:
    """
    Polling loop bound. timeout_seconds is mandatory: there is no
    wait-forever mode.
    """

    interval_seconds: float = 5.0
    timeout_seconds: float = 600.0

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


def run_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    action: str,
    recover: Optional[Callable[[], None]] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    retry_on: tuple[type[Exception], ...] = (TransientRemoteFailure,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn until it succeeds or policy.max_attempts calls have failed.

    Between attempts the recovery action runs first, then the delay.
    Exceptions outside retry_on (timeouts in particular) propagate at once.
    """
    last_exc: Optional[Exception] = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn()
        except retry_on as exc:
            last_exc = exc
            if attempt == policy.max_attempts:
                break
            if on_retry:
                on_retry(attempt, exc)
            delay = policy.delay_for(attempt)
            log.warning(
                "%s failed (attempt %d/%d): %s; retrying in %gs",
                action, attempt, policy.max_attempts, exc, delay,
            )
            if recover is not None:
                try:
                    recover()
                except TransientRemoteFailure as rexc:
                    log.warning("%s: recovery action failed: %s", action, rexc)
            sleep(delay)

    log.error("%s failed after %d attempts", action, policy.max_attempts)
    raise RetryExhausted(action, policy.max_attempts, last_exc) from last_exc


def poll_until(
    predicate: Callable[[], bool],
    wait: WaitPolicy,
    *,
    what: str,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """
    Re-evaluate predicate every wait.interval_seconds until it returns True.

    A TransientRemoteFailure from the predicate counts as "not yet".
    Returns the number of probes it took; raises TimeoutFailure once
    wait.timeout_seconds have elapsed.
    """
    start = clock()
    probes = 0
    while True:
        probes += 1
        try:
            if predicate():
                log.debug("%s satisfied after %d probe(s)", what, probes)
                return probes
        except TransientRemoteFailure as exc:
            log.debug("%s probe %d failed: %s", what, probes, exc)

        elapsed = clock() - start
        if elapsed >= wait.timeout_seconds:
            raise TimeoutFailure(what, wait.timeout_seconds)

        if probes % 6 == 0:
            log.info(
                "Still waiting for %s (%.0fs/%.0fs)",
                what, elapsed, wait.timeout_seconds,
            )
        sleep(wait.interval_seconds)
