# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/node/steps.py

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from kubestrap.bootstrap.template_renderer import TemplateRenderer
from kubestrap.errors import NonCriticalStepFailure, StepFailure, TransientRemoteFailure
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import StepFailed, StepStarted, StepSucceeded, new_ctx, stamp
from kubestrap.utils.ssh_runner import RemoteCommandRunner

from .models import NodeRole

log = logging.getLogger("kubestrap")


@dataclass(frozen=True)
class BootstrapStep:
    """
    One named shell operation. Steps are expected to be safe to re-run;
    a non-critical step may fail without stopping the sequence.
    """

    name: str
    command: str
    critical: bool = True
    sudo: bool = True
    timeout: Optional[float] = None


@dataclass
class StepResult:
    step: str
    ok: bool
    critical: bool
    duration_ms: int = 0
    error: Optional[str] = None


# ------------------ package bootstrap catalogue ------------------

TEMPLATES: Dict[str, str] = {
    "swap": (
        "swapoff -a\n"
        "sed -i '/\\sswap\\s/ s/^#*/#/' /etc/fstab"
    ),
    "kernel_modules": (
        "cat > /etc/modules-load.d/k8s.conf <<'EOF'\n"
        "{% for m in modules %}{{ m }}\n{% endfor %}"
        "EOF\n"
        "{% for m in modules %}modprobe {{ m }}\n{% endfor %}"
    ),
    "sysctl": (
        "cat > /etc/sysctl.d/k8s.conf <<'EOF'\n"
        "{% for k, v in sysctl.items() %}{{ k }} = {{ v }}\n{% endfor %}"
        "EOF\n"
        "sysctl --system"
    ),
    "apt_prerequisites": (
        "apt-get update -y\n"
        "DEBIAN_FRONTEND=noninteractive apt-get install -y apt-transport-https ca-certificates curl gpg"
    ),
    "kubernetes_repo": (
        "install -d -m 0755 /etc/apt/keyrings\n"
        "curl -fsSL https://pkgs.k8s.io/core:/stable:/v{{ version }}/deb/Release.key"
        " | gpg --dearmor --yes -o /etc/apt/keyrings/kubernetes-apt-keyring.gpg\n"
        "echo 'deb [signed-by=/etc/apt/keyrings/kubernetes-apt-keyring.gpg]"
        " https://pkgs.k8s.io/core:/stable:/v{{ version }}/deb/ /'"
        " > /etc/apt/sources.list.d/kubernetes.list"
    ),
    "install_packages": (
        "apt-get update -y\n"
        "DEBIAN_FRONTEND=noninteractive apt-get install -y {{ packages | join(' ') }}"
    ),
    "hold_packages": "apt-mark hold kubelet kubeadm kubectl",
    "containerd_config": (
        "install -d -m 0755 /etc/containerd\n"
        "containerd config default > /etc/containerd/config.toml\n"
        "sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' /etc/containerd/config.toml\n"
        "systemctl restart containerd"
    ),
    "enable_services": "systemctl enable --now containerd kubelet",
    "pull_images": "kubeadm config images pull",
}

KERNEL_MODULES = ("overlay", "br_netfilter")

SYSCTL = {
    "net.bridge.bridge-nf-call-iptables": 1,
    "net.bridge.bridge-nf-call-ip6tables": 1,
    "net.ipv4.ip_forward": 1,
}

BASE_PACKAGES = ("containerd", "kubelet", "kubeadm", "kubectl")

_renderer = TemplateRenderer(TEMPLATES)


def package_steps(
    role: NodeRole,
    *,
    kubernetes_version: str,
    extra_packages: Sequence[str] = (),
) -> List[BootstrapStep]:
    """
    OS-level setup shared by every node. The primary additionally pre-pulls
    control plane images so kubeadm init does not race the registry.
    """
    def r(name: str, context: dict) -> str:
        # multi-line steps stop at the first failing line
        return "set -e\n" + _renderer.render(name, context)

    packages = list(BASE_PACKAGES) + [p for p in extra_packages if p not in BASE_PACKAGES]

    steps = [
        BootstrapStep("disable-swap", r("swap", {})),
        BootstrapStep("kernel-modules", r("kernel_modules", {"modules": KERNEL_MODULES})),
        BootstrapStep("sysctl", r("sysctl", {"sysctl": SYSCTL})),
        BootstrapStep("apt-prerequisites", r("apt_prerequisites", {}), timeout=600),
        BootstrapStep("kubernetes-repo", r("kubernetes_repo", {"version": kubernetes_version})),
        BootstrapStep("install-packages", r("install_packages", {"packages": packages}), timeout=900),
        BootstrapStep("hold-packages", r("hold_packages", {}), critical=False),
        BootstrapStep("containerd-config", r("containerd_config", {})),
        BootstrapStep("enable-services", r("enable_services", {})),
    ]
    if role == NodeRole.PRIMARY:
        steps.append(BootstrapStep("pull-images", r("pull_images", {}), critical=False, timeout=900))
    return steps


# ------------------ stepping engine ------------------

class StepRunner:
    """
    Executes an ordered list of BootstrapSteps on one host.

    Critical failures raise StepFailure and stop the sequence.
    Non-critical failures are logged, reported and skipped over.
    TimeoutFailure always propagates.
    """

    def __init__(
        self,
        runner: RemoteCommandRunner,
        *,
        node_name: str,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runner = runner
        self.node_name = node_name
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(cluster="-")
        self._clock = clock
        self.tolerated: List[NonCriticalStepFailure] = []

    def run(self, steps: Iterable[BootstrapStep]) -> List[StepResult]:
        steps = list(steps)
        results: List[StepResult] = []
        for i, step in enumerate(steps, 1):
            log.info("[%s] step %d/%d: %s", self.node_name, i, len(steps), step.name)
            self.bus.emit(StepStarted(node=self.node_name, step=step.name, **stamp(self.run_ctx)))
            t0 = self._clock()
            try:
                self.runner.check(step.command, sudo=step.sudo, timeout=step.timeout)
            except TransientRemoteFailure as exc:
                duration_ms = int((self._clock() - t0) * 1000)
                results.append(StepResult(step.name, ok=False, critical=step.critical, duration_ms=duration_ms, error=str(exc)))
                self.bus.emit(
                    StepFailed(node=self.node_name, step=step.name, critical=step.critical, error=str(exc), **stamp(self.run_ctx))
                )
                if step.critical:
                    log.error("[%s] critical step %s failed: %s", self.node_name, step.name, exc)
                    raise StepFailure(step.name, exc) from exc
                log.warning("[%s] non-critical step %s failed, continuing: %s", self.node_name, step.name, exc)
                self.tolerated.append(NonCriticalStepFailure(step.name, exc))
                continue

            duration_ms = int((self._clock() - t0) * 1000)
            results.append(StepResult(step.name, ok=True, critical=step.critical, duration_ms=duration_ms))
            self.bus.emit(StepSucceeded(node=self.node_name, step=step.name, duration_ms=duration_ms, **stamp(self.run_ctx)))
        return results
