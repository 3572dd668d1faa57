# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/kube/kubectl.py

from __future__ import annotations

import json
import logging
from typing import Optional

from kubestrap.errors import BootstrapError, TransientRemoteFailure
from kubestrap.utils.ssh_runner import RemoteCommandRunner

log = logging.getLogger("kubestrap")


class KubectlError(TransientRemoteFailure):
    pass


class KubectlRunner:
    """
    kubectl runner executed remotely over SSH on the primary node.
    """

    def __init__(
        self,
        *,
        ssh: RemoteCommandRunner,
        kubeconfig: str = "/etc/kubernetes/admin.conf",
    ):
        self.ssh = ssh
        self.kubeconfig = kubeconfig

    def _run(self, cmd: str, *, timeout: Optional[float] = None) -> tuple[int, str, str]:
        """
        Run a kubectl command.

        Returns:
            (rc, stdout, stderr)
        """
        full_cmd = f"KUBECONFIG={self.kubeconfig} kubectl {cmd}"
        return self.ssh.run(full_cmd, sudo=True, timeout=timeout)

    def apply_file(self, path: str, *, server_side: bool = False) -> str:
        """
        kubectl apply -f <path-or-url>
        """
        flags = " --server-side" if server_side else ""
        rc, out, err = self._run(f"apply{flags} -f {path}")
        if rc != 0:
            raise KubectlError(f"kubectl apply -f {path} failed: {(err or out).strip()}", rc=rc, stdout=out, stderr=err)
        log.debug("[kubectl] applied %s:\n%s", path, out.strip())
        return out

    def get_nodes(self) -> list[dict]:
        rc, out, err = self._run("get nodes -o json")
        if rc != 0:
            raise KubectlError(f"kubectl get nodes failed: {(err or out).strip()}", rc=rc, stdout=out, stderr=err)
        try:
            return json.loads(out).get("items", [])
        except json.JSONDecodeError as e:
            raise KubectlError(f"Failed to parse kubectl output as JSON: {e}") from e

    def node_ready(self, address: str) -> bool:
        """
        True when the node whose InternalIP is *address* reports Ready=True.
        """
        for item in self.get_nodes():
            addrs = item.get("status", {}).get("addresses", [])
            if not any(a.get("type") == "InternalIP" and a.get("address") == address for a in addrs):
                continue
            for cond in item.get("status", {}).get("conditions", []):
                if cond.get("type") == "Ready":
                    return cond.get("status") == "True"
            return False
        return False

    def node_summary(self) -> str:
        """Brief name/Ready listing used in progress logs."""
        try:
            nodes = self.get_nodes()
        except BootstrapError:
            return "unable to fetch nodes"
        if not nodes:
            return "no nodes registered"
        parts = []
        for n in nodes:
            name = n.get("metadata", {}).get("name", "?")
            ready = next(
                (c.get("status") for c in n.get("status", {}).get("conditions", []) if c.get("type") == "Ready"),
                "Unknown",
            )
            parts.append(f"{name}: Ready={ready}")
        return "; ".join(parts)
