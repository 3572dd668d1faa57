# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/inventory.py

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from kubestrap.bootstrap.node.models import Node
from kubestrap.config.models import ClusterConfig

log = logging.getLogger("kubestrap")


class ProvisioningBackend(Protocol):
    """Query side of whatever created the VMs: which nodes exist and where."""

    def nodes(self) -> List[Node]: ...


class StaticInventory:
    """Addresses written directly into the cluster config."""

    def __init__(self, cfg: ClusterConfig):
        self.cfg = cfg

    def nodes(self) -> List[Node]:
        return [spec.to_node() for spec in self.cfg.nodes]


class TerraformOutputs:
    """
    Addresses taken from `terraform output -json`.

    For a node named `master` the keys are `master_private_ip` and
    `master_public_ip`. Values may be wrapped terraform-style
    ({"value": ..., "sensitive": ...}) or plain. Anything missing falls
    back to the address in the config.
    """

    def __init__(self, cfg: ClusterConfig, outputs: Dict[str, Any]):
        self.cfg = cfg
        self.outputs = outputs

    @classmethod
    def from_file(cls, cfg: ClusterConfig, path: str | Path) -> "TerraformOutputs":
        path = Path(path)
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ValueError(f"{path} is not valid terraform output JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a JSON object of outputs")
        return cls(cfg, data)

    def _value(self, key: str) -> Optional[str]:
        raw = self.outputs.get(key)
        if isinstance(raw, dict):
            raw = raw.get("value")
        if raw in (None, ""):
            return None
        return str(raw)

    def nodes(self) -> List[Node]:
        nodes = []
        for spec in self.cfg.nodes:
            private = self._value(f"{spec.name}_private_ip") or spec.private_address
            public = self._value(f"{spec.name}_public_ip") or spec.public_address
            if not private:
                raise ValueError(
                    f"no private address for node '{spec.name}' "
                    f"(expected '{spec.name}_private_ip' in terraform outputs)"
                )
            log.debug("[inventory] %s private=%s public=%s", spec.name, private, public or "-")
            nodes.append(Node(name=spec.name, role=spec.role, private_address=private, public_address=public))
        return nodes


def resolve_nodes(cfg: ClusterConfig, outputs_file: str | Path | None = None) -> List[Node]:
    backend: ProvisioningBackend
    if outputs_file:
        backend = TerraformOutputs.from_file(cfg, outputs_file)
    else:
        backend = StaticInventory(cfg)
    return backend.nodes()
