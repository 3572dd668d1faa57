# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/outputs.py

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from kubestrap.bootstrap.node.models import Node
from kubestrap.bootstrap.template_renderer import TemplateRenderer
from kubestrap.config.models import ClusterConfig
from kubestrap.keys import load_public_key

TEMPLATES = {
    "kubeconfig_command": (
        "ssh -i {{ key }}{% if port != 22 %} -p {{ port }}{% endif %}"
        " {{ user }}@{{ host }} 'cat ~/.kube/config' > {{ dest }}"
    ),
}

_renderer = TemplateRenderer(TEMPLATES)


@dataclass
class ClusterOutputs:
    """What a finished run hands back to the operator."""

    primary_address: str
    primary_private_address: str
    secondary_addresses: Dict[str, str] = field(default_factory=dict)
    kubeconfig_command: str = ""
    private_key_path: str = ""
    public_key: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


def kubeconfig_command(cfg: ClusterConfig, primary: Node, *, dest: str = "./kubeconfig") -> str:
    key = cfg.ssh.private_key_path or cfg.keys.private_key_path
    return _renderer.render(
        "kubeconfig_command",
        {
            "key": str(key),
            "port": cfg.ssh.port,
            "user": cfg.ssh.username,
            "host": primary.ssh_address,
            "dest": dest,
        },
    )


def collect_outputs(cfg: ClusterConfig, nodes: List[Node]) -> ClusterOutputs:
    primary = next(n for n in nodes if n.is_primary)
    key_path = Path(cfg.ssh.private_key_path or cfg.keys.private_key_path).expanduser()
    public_key = load_public_key(key_path) if key_path.is_file() else None

    return ClusterOutputs(
        primary_address=primary.ssh_address,
        primary_private_address=primary.private_address,
        secondary_addresses={n.name: n.ssh_address for n in nodes if not n.is_primary},
        kubeconfig_command=kubeconfig_command(cfg, primary),
        private_key_path=str(key_path),
        public_key=public_key,
    )
