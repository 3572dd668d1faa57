# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/cluster/initializer.py

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from kubestrap.errors import TimeoutFailure
from kubestrap.kube.kubectl import KubectlRunner
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

log = logging.getLogger("kubestrap")


@dataclass(frozen=True)
class InitOptions:
    advertise_address: str
    pod_network_cidr: str = "10.244.0.0/16"
    preflight: str = "ignore-all"          # "ignore-all" | "strict"
    admin_conf: str = "/etc/kubernetes/admin.conf"


def preflight_flag(preflight: str) -> str:
    if preflight == "ignore-all":
        return " --ignore-preflight-errors=all"
    if preflight == "strict":
        return ""
    raise ValueError(f"unknown preflight policy: {preflight!r}")


class ClusterInitializer:
    """
    Drives the primary node through kubeadm init:
      - bounded retry, restarting kubelet before each new attempt
      - admin credentials for the SSH user
      - network overlay
      - waits until the primary itself reports Ready
    """

    def __init__(
        self,
        runner: RemoteCommandRunner,
        *,
        node_name: str,
        retry: RetryPolicy,
        ready_wait: WaitPolicy,
        recovery_command: Optional[str] = "systemctl restart kubelet",
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self.node_name = node_name
        self.retry = retry
        self.ready_wait = ready_wait
        self.recovery_command = recovery_command
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(cluster="-")
        self._sleep = sleep
        self._clock = clock

    # ------------------ kubeadm init ------------------

    @staticmethod
    def init_command(opts: InitOptions) -> str:
        return (
            "kubeadm init"
            f" --apiserver-advertise-address={opts.advertise_address}"
            f" --pod-network-cidr={opts.pod_network_cidr}"
            f"{preflight_flag(opts.preflight)}"
        )

    def already_initialized(self, opts: InitOptions) -> bool:
        rc, _, _ = self.runner.run(f"test -f {opts.admin_conf}", sudo=True)
        return rc == 0

    def _recover(self) -> None:
        if self.recovery_command:
            log.info("[%s] recovery: %s", self.node_name, self.recovery_command)
            self.runner.check(self.recovery_command, sudo=True)

    def _on_retry(self, attempt: int, exc: Exception) -> None:
        self.bus.emit(
            RetryAttempt(
                node=self.node_name,
                action="kubeadm init",
                attempt=attempt,
                max_attempts=self.retry.max_attempts,
                error=str(exc),
                **stamp(self.run_ctx),
            )
        )

    def initialize(self, opts: InitOptions) -> bool:
        """
        Run kubeadm init. Returns False when the control plane was already
        initialized and nothing ran. Raises RetryExhausted when every attempt
        failed.
        """
        if self.already_initialized(opts):
            log.info("[%s] %s exists, control plane already initialized", self.node_name, opts.admin_conf)
            return False

        cmd = self.init_command(opts)
        log.info("[%s] Initializing control plane: %s", self.node_name, cmd)
        run_with_retry(
            lambda: self.runner.check(cmd, sudo=True),
            self.retry,
            action=f"[{self.node_name}] kubeadm init",
            recover=self._recover,
            on_retry=self._on_retry,
            sleep=self._sleep,
        )
        log.info("[%s] Control plane initialized", self.node_name)
        return True

    # ------------------ post-init ------------------

    def install_admin_credentials(self, opts: InitOptions) -> None:
        """
        Copy admin.conf into the SSH user's ~/.kube/config.
        """
        self.runner.check(
            'home=$(getent passwd "$SUDO_USER" | cut -d: -f6)\n'
            'install -d -m 0700 -o "$SUDO_USER" "$home/.kube"\n'
            f'install -m 0600 -o "$SUDO_USER" {opts.admin_conf} "$home/.kube/config"',
            sudo=True,
        )

    def apply_network_overlay(self, kubectl: KubectlRunner, manifest: str) -> None:
        log.info("[%s] Applying network overlay %s", self.node_name, manifest)
        run_with_retry(
            lambda: kubectl.apply_file(manifest),
            self.retry,
            action=f"[{self.node_name}] network overlay apply",
            sleep=self._sleep,
        )

    def wait_until_ready(self, kubectl: KubectlRunner, address: str) -> int:
        what = f"node {self.node_name} ({address}) Ready"
        self.bus.emit(
            WaitStarted(node=self.node_name, what=what, timeout_s=self.ready_wait.timeout_seconds, **stamp(self.run_ctx))
        )
        try:
            probes = poll_until(
                lambda: kubectl.node_ready(address),
                self.ready_wait,
                what=what,
                sleep=self._sleep,
                clock=self._clock,
            )
        except TimeoutFailure:
            log.error("[%s] node never became Ready: %s", self.node_name, kubectl.node_summary())
            self.bus.emit(
                WaitTimedOut(node=self.node_name, what=what, timeout_s=self.ready_wait.timeout_seconds, **stamp(self.run_ctx))
            )
            raise
        self.bus.emit(WaitSucceeded(node=self.node_name, what=what, probes=probes, **stamp(self.run_ctx)))
        log.info("[%s] Node is Ready", self.node_name)
        return probes
