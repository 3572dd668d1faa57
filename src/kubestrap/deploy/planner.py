# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from ..config.models import ClusterConfig

from ..observers.dispatcher import EventBus
from ..observers.events import PlanComputed, PlanFailed, new_ctx


class UnknownDependencyError(ValueError):
    pass


class CyclicDependencyError(ValueError):
    pass


@dataclass(frozen=True)
class Phase:
    name: str
    node: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    description: str = ""


def build_phases(cfg: ClusterConfig) -> List[Phase]:
    """
    The bootstrap as a dependency graph. Package installation has no
    dependencies, so it runs on every node at once; each join waits for
    the credential, which in turn needs a Ready primary.
    """
    primary = cfg.primary()
    phases = [
        Phase(f"packages:{n.name}", n.name, [], "OS configuration and Kubernetes packages")
        for n in cfg.nodes
    ]
    phases += [
        Phase("init", primary.name, [f"packages:{primary.name}"], "kubeadm init with bounded retry"),
        Phase("overlay", primary.name, ["init"], "admin kubeconfig and network overlay"),
        Phase("ready", primary.name, ["overlay"], "wait for the primary to report Ready"),
        Phase("credentials", primary.name, ["ready"], f"issue join credential ({cfg.credentials.strategy})"),
    ]
    for n in cfg.secondaries():
        phases.append(
            Phase(
                f"join:{n.name}",
                n.name,
                [f"packages:{n.name}", "credentials"],
                "wait for the primary API, kubeadm join, kubelet active",
            )
        )
    if cfg.manifest.source is not None:
        phases.append(
            Phase("manifest", primary.name, ["ready"], f"apply workload manifest ({cfg.manifest.on_failure})")
        )
    return phases


def _validate_dependencies(phases: List[Phase]) -> None:
    names: Set[str] = {p.name for p in phases}
    for p in phases:
        for d in p.dependencies:
            if d not in names:
                raise UnknownDependencyError(
                    f"Phase '{p.name}' depends on unknown phase '{d}'"
                )


def plan(
    phases: List[Phase],
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> List[Phase]:
    """
    Stable topological sort of phases based on 'dependencies'.
    Emits PlanComputed / PlanFailed if an EventBus is provided.
    """
    ctx = run_ctx or new_ctx(cluster="-")
    try:
        _validate_dependencies(phases)

        by_name: Dict[str, Phase] = {p.name: p for p in phases}
        indeg: Dict[str, int] = {p.name: len(p.dependencies) for p in phases}
        graph: Dict[str, Set[str]] = {p.name: set(p.dependencies) for p in phases}

        queue = deque(sorted([n for n, deg in indeg.items() if deg == 0]))
        order: List[Phase] = []

        while queue:
            n = queue.popleft()
            order.append(by_name[n])
            for m, deps in graph.items():
                if n in deps:
                    indeg[m] -= 1
                    if indeg[m] == 0:
                        queue.append(m)
                        queue = deque(sorted(queue))  # deterministic

        if len(order) != len(phases):
            raise CyclicDependencyError("Cyclic dependency detected among phases")

        if bus:
            bus.emit(PlanComputed(order=[p.name for p in order], **ctx))
        return order

    except (UnknownDependencyError, CyclicDependencyError) as e:
        if bus:
            bus.emit(PlanFailed(error=str(e), **ctx))
        raise
