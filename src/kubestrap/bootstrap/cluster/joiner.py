# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/cluster/joiner.py

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Protocol

from kubestrap.errors import TimeoutFailure
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import (
    RetryAttempt,
    WaitStarted,
    WaitSucceeded,
    WaitTimedOut,
    new_ctx,
    stamp,
)
from kubestrap.utils.retry import RetryPolicy, WaitPolicy, poll_until, run_with_retry
from kubestrap.utils.ssh_runner import RemoteCommandRunner

from .credentials import JoinCredential

log = logging.getLogger("kubestrap")

KUBELET_CONF = "/etc/kubernetes/kubelet.conf"


class ApiProbe(Protocol):
    endpoint: str

    def __call__(self) -> bool: ...


class RemoteApiProbe:
    """
    Checks from the secondary that the primary's API accepts connections.

    mode="tcp": plain TCP connect to host:port
    mode="healthz": the API server answers /healthz with "ok"
    """

    def __init__(self, runner: RemoteCommandRunner, *, host: str, port: int = 6443, mode: str = "tcp", timeout: int = 5):
        if mode not in ("tcp", "healthz"):
            raise ValueError(f"unknown probe mode: {mode!r}")
        self.runner = runner
        self.host = host
        self.port = port
        self.mode = mode
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"

    def __call__(self) -> bool:
        if self.mode == "tcp":
            rc, _, _ = self.runner.run(f"timeout {self.timeout} bash -c '</dev/tcp/{self.host}/{self.port}'")
            return rc == 0
        rc, out, _ = self.runner.run(
            f"curl -sk --max-time {self.timeout} https://{self.host}:{self.port}/healthz"
        )
        return rc == 0 and out.strip() == "ok"


class NodeJoiner:
    """
    Drives a secondary into the cluster:
      - blocks until the primary API answers the probe (bounded)
      - kubeadm join with bounded retry, restarting kubelet before each new attempt
      - waits for kubelet to stay active
    """

    def __init__(
        self,
        runner: RemoteCommandRunner,
        *,
        node_name: str,
        retry: RetryPolicy,
        api_wait: WaitPolicy,
        kubelet_wait: WaitPolicy,
        preflight: str = "ignore-all",
        recovery_command: Optional[str] = "systemctl restart kubelet",
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self.node_name = node_name
        self.retry = retry
        self.api_wait = api_wait
        self.kubelet_wait = kubelet_wait
        self.preflight = preflight
        self.recovery_command = recovery_command
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(cluster="-")
        self._sleep = sleep
        self._clock = clock

    def _wait(self, what: str, predicate: Callable[[], bool], wait: WaitPolicy) -> int:
        self.bus.emit(WaitStarted(node=self.node_name, what=what, timeout_s=wait.timeout_seconds, **stamp(self.run_ctx)))
        try:
            probes = poll_until(predicate, wait, what=what, sleep=self._sleep, clock=self._clock)
        except TimeoutFailure:
            self.bus.emit(WaitTimedOut(node=self.node_name, what=what, timeout_s=wait.timeout_seconds, **stamp(self.run_ctx)))
            raise
        self.bus.emit(WaitSucceeded(node=self.node_name, what=what, probes=probes, **stamp(self.run_ctx)))
        return probes

    def wait_for_api(self, probe: ApiProbe) -> int:
        log.info("[%s] Waiting for primary API at %s...", self.node_name, probe.endpoint)
        probes = self._wait(f"primary API {probe.endpoint}", probe, self.api_wait)
        log.info("[%s] Primary API reachable", self.node_name)
        return probes

    def already_joined(self) -> bool:
        rc, _, _ = self.runner.run(f"test -f {KUBELET_CONF}", sudo=True)
        return rc == 0

    def _recover(self) -> None:
        if self.recovery_command:
            log.info("[%s] recovery: %s", self.node_name, self.recovery_command)
            self.runner.check(self.recovery_command, sudo=True)

    def _on_retry(self, attempt: int, exc: Exception) -> None:
        self.bus.emit(
            RetryAttempt(
                node=self.node_name,
                action="kubeadm join",
                attempt=attempt,
                max_attempts=self.retry.max_attempts,
                error=str(exc),
                **stamp(self.run_ctx),
            )
        )

    def join(self, credential: JoinCredential, probe: ApiProbe) -> bool:
        """
        Join once the primary API is reachable. Returns False when the node
        was already part of a cluster. Raises TimeoutFailure if the API never
        answers, RetryExhausted if every join attempt failed.
        """
        self.wait_for_api(probe)

        if self.already_joined():
            log.info("[%s] %s exists, node already joined", self.node_name, KUBELET_CONF)
            return False

        cmd = credential.join_command(self.preflight)
        log.info("[%s] Joining cluster at %s", self.node_name, credential.endpoint)
        run_with_retry(
            lambda: self.runner.check(cmd, sudo=True, sensitive=True),
            self.retry,
            action=f"[{self.node_name}] kubeadm join",
            recover=self._recover,
            on_retry=self._on_retry,
            sleep=self._sleep,
        )
        log.info("[%s] Joined cluster", self.node_name)
        return True

    def wait_for_kubelet(self) -> int:
        def active() -> bool:
            rc, _, _ = self.runner.run("systemctl is-active --quiet kubelet")
            return rc == 0

        return self._wait(f"kubelet active on {self.node_name}", active, self.kubelet_wait)
