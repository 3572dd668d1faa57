# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/node/ssh_bootstrapper.py

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from kubestrap.observers.dispatcher import EventBus
from kubestrap.utils.ssh_runner import RemoteCommandRunner

from .models import Node
from .steps import BootstrapStep, StepResult, StepRunner, package_steps

log = logging.getLogger("kubestrap")


class PackageBootstrapper:
    """
    Applies node-level OS configuration over an SSH session:
      - swap off, kernel modules, bridge/forwarding sysctls
      - Kubernetes apt repository and packages (containerd, kubelet, kubeadm, kubectl)
      - containerd systemd cgroup driver, services enabled
    One catalogue for every role; the role only adds role-specific extras.
    """

    def __init__(
        self,
        *,
        kubernetes_version: str,
        extra_packages: Sequence[str] = (),
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.kubernetes_version = kubernetes_version
        self.extra_packages = tuple(extra_packages)
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx

    def steps_for(self, node: Node) -> List[BootstrapStep]:
        extras = self.extra_packages if node.is_primary else ()
        return package_steps(node.role, kubernetes_version=self.kubernetes_version, extra_packages=extras)

    def bootstrap(self, runner: RemoteCommandRunner, node: Node) -> List[StepResult]:
        """
        Run the package steps for *node*. Raises StepFailure on the first
        critical failure.
        """
        steps = self.steps_for(node)
        log.info("[%s] Bootstrapping packages (%d steps)...", node.name, len(steps))
        engine = StepRunner(runner, node_name=node.name, bus=self.bus, run_ctx=self.run_ctx)
        results = engine.run(steps)
        if engine.tolerated:
            log.warning(
                "[%s] Packages installed with %d tolerated failure(s): %s",
                node.name, len(engine.tolerated), ", ".join(f.step for f in engine.tolerated),
            )
        else:
            log.info("[%s] Packages installed", node.name)
        return results
