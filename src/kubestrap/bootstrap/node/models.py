# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/node/models.py

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple


class NodeRole(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class NodeState(str, Enum):
    UNPROVISIONED = "Unprovisioned"
    PACKAGES_INSTALLED = "PackagesInstalled"
    CLUSTER_INITIALIZED = "ClusterInitialized"
    NETWORK_OVERLAY_APPLIED = "NetworkOverlayApplied"
    WAITING_FOR_PRIMARY = "WaitingForPrimary"
    JOINED = "Joined"
    READY = "Ready"
    FAILED = "Failed"


_PRIMARY_PATH = (
    NodeState.UNPROVISIONED,
    NodeState.PACKAGES_INSTALLED,
    NodeState.CLUSTER_INITIALIZED,
    NodeState.NETWORK_OVERLAY_APPLIED,
    NodeState.READY,
)

_SECONDARY_PATH = (
    NodeState.UNPROVISIONED,
    NodeState.PACKAGES_INSTALLED,
    NodeState.WAITING_FOR_PRIMARY,
    NodeState.JOINED,
    NodeState.READY,
)


def _transitions(path: Tuple[NodeState, ...]) -> Dict[NodeState, FrozenSet[NodeState]]:
    table: Dict[NodeState, FrozenSet[NodeState]] = {}
    for current, nxt in zip(path, path[1:]):
        table[current] = frozenset({nxt, NodeState.FAILED})
    table[NodeState.READY] = frozenset()
    table[NodeState.FAILED] = frozenset()
    return table


TRANSITIONS: Dict[NodeRole, Dict[NodeState, FrozenSet[NodeState]]] = {
    NodeRole.PRIMARY: _transitions(_PRIMARY_PATH),
    NodeRole.SECONDARY: _transitions(_SECONDARY_PATH),
}

TERMINAL_STATES = frozenset({NodeState.READY, NodeState.FAILED})


class InvalidTransition(ValueError):
    pass


@dataclass
class Host:
    """
    Represents a server you will SSH into.
    """
    hostname: str                 # node name as it appears in the config
    address: str                  # IP or DNS to connect to
    username: str                 # SSH username
    port: int = 22
    password: Optional[str] = None
    pkey_path: Optional[Path] = None


@dataclass(frozen=True)
class Node:
    name: str
    role: NodeRole
    private_address: str
    public_address: Optional[str] = None

    @property
    def ssh_address(self) -> str:
        # ephemeral public address when we have one, otherwise stay on the private network
        return self.public_address or self.private_address

    @property
    def is_primary(self) -> bool:
        return self.role == NodeRole.PRIMARY


@dataclass
class NodeStatus:
    """
    Per-node state machine. Transitions are validated against the role's path;
    every node can fall into Failed from any non-terminal state.
    """

    node: Node
    state: NodeState = NodeState.UNPROVISIONED
    last_error: Optional[str] = None
    history: List[NodeState] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def advance(self, to: NodeState) -> None:
        with self._lock:
            allowed = TRANSITIONS[self.node.role][self.state]
            if to not in allowed:
                raise InvalidTransition(
                    f"{self.node.name}: {self.state.value} -> {to.value} is not allowed "
                    f"for a {self.node.role.value} node"
                )
            self.history.append(self.state)
            self.state = to

    def fail(self, error: BaseException | str) -> None:
        with self._lock:
            if self.state in TERMINAL_STATES:
                return
            self.last_error = str(error)
            self.history.append(self.state)
            self.state = NodeState.FAILED

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES
