# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/config/models.py

from __future__ import annotations

from pathlib import Path
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, SecretStr, model_validator

from kubestrap.bootstrap.node.models import Node, NodeRole
from kubestrap.utils.retry import RetryPolicy, WaitPolicy


FLANNEL_MANIFEST = (
    "https://github.com/flannel-io/flannel/releases/latest/download/kube-flannel.yml"
)


class SSHSettings(BaseModel):
    username: str = "ubuntu"
    port: int = 22
    private_key_path: Optional[Path] = None
    password: Optional[SecretStr] = None
    connect_timeout: float = 20.0
    connect_attempts: int = 10
    connect_delay: float = 10.0
    session_timeout: float = 1200.0     # whole remote session, 20 minutes
    command_timeout: Optional[float] = None


class NodeSpec(BaseModel):
    name: str
    role: NodeRole
    private_address: Optional[str] = None
    public_address: Optional[str] = None

    def to_node(self) -> Node:
        if not self.private_address:
            raise ValueError(f"node '{self.name}' has no private_address")
        return Node(
            name=self.name,
            role=self.role,
            private_address=self.private_address,
            public_address=self.public_address,
        )


class RetrySettings(BaseModel):
    max_attempts: int = Field(5, ge=1)
    delay_seconds: float = Field(30.0, ge=0)
    backoff: float = Field(1.0, ge=1.0)
    recovery_command: Optional[str] = "systemctl restart kubelet"

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            delay_seconds=self.delay_seconds,
            backoff=self.backoff,
        )


class WaitSettings(BaseModel):
    interval_seconds: float = Field(5.0, gt=0)
    timeout_seconds: float = Field(600.0, gt=0)

    def policy(self) -> WaitPolicy:
        return WaitPolicy(
            interval_seconds=self.interval_seconds,
            timeout_seconds=self.timeout_seconds,
        )


class KubeadmSettings(BaseModel):
    kubernetes_version: str = "1.30"
    pod_network_cidr: str = "10.244.0.0/16"
    api_port: int = 6443
    preflight: Literal["ignore-all", "strict"] = "ignore-all"
    network_overlay_manifest: str = FLANNEL_MANIFEST
    admin_conf: str = "/etc/kubernetes/admin.conf"
    init_retry: RetrySettings = Field(default_factory=RetrySettings)
    join_retry: RetrySettings = Field(default_factory=RetrySettings)
    node_ready_wait: WaitSettings = Field(default_factory=lambda: WaitSettings(interval_seconds=5, timeout_seconds=600))
    api_wait: WaitSettings = Field(default_factory=lambda: WaitSettings(interval_seconds=10, timeout_seconds=900))
    kubelet_wait: WaitSettings = Field(default_factory=lambda: WaitSettings(interval_seconds=5, timeout_seconds=300))
    api_probe: Literal["tcp", "healthz"] = "tcp"


class CredentialSettings(BaseModel):
    strategy: Literal["local-mint", "external"] = "local-mint"
    join_command_path: str = "/tmp/kubeadm-join-command.sh"
    wait_timeout_seconds: float = Field(1800.0, gt=0)


class GitManifestSource(BaseModel):
    type: Literal["git"] = "git"
    repository: str
    path: str
    ref: Optional[str] = None
    checkout_dir: str = "/tmp/kubestrap-manifests"


class BucketManifestSource(BaseModel):
    type: Literal["bucket"] = "bucket"
    bucket: str
    key: str
    endpoint: str = "https://storage.googleapis.com"
    token: Optional[SecretStr] = None
    request_timeout: float = 30.0


class FileManifestSource(BaseModel):
    type: Literal["file"] = "file"
    path: Path


ManifestSourceSpec = Annotated[
    Union[GitManifestSource, BucketManifestSource, FileManifestSource],
    Field(discriminator="type"),
]


class ManifestSettings(BaseModel):
    source: Optional[ManifestSourceSpec] = None
    on_failure: Literal["fail-run", "warn-and-continue"] = "warn-and-continue"
    remote_path: str = "/tmp/kubestrap-manifest.yaml"


class KeySettings(BaseModel):
    private_key_path: Path = Path("~/.kubestrap/keys/id_rsa")
    comment: str = "kubestrap"


class ClusterConfig(BaseModel):
    name: str = "kubestrap"
    ssh: SSHSettings = Field(default_factory=SSHSettings)
    nodes: List[NodeSpec]
    kubeadm: KubeadmSettings = Field(default_factory=KubeadmSettings)
    credentials: CredentialSettings = Field(default_factory=CredentialSettings)
    manifest: ManifestSettings = Field(default_factory=ManifestSettings)
    keys: KeySettings = Field(default_factory=KeySettings)

    @model_validator(mode="after")
    def _check_nodes(self) -> "ClusterConfig":
        names = [n.name for n in self.nodes]
        dupes = {n for n in names if names.count(n) > 1}
        if dupes:
            raise ValueError(f"duplicate node names: {sorted(dupes)}")
        primaries = [n for n in self.nodes if n.role == NodeRole.PRIMARY]
        if len(primaries) != 1:
            raise ValueError(f"exactly one primary node is required, got {len(primaries)}")
        return self

    # Helper methods
    def primary(self) -> NodeSpec:
        return next(n for n in self.nodes if n.role == NodeRole.PRIMARY)

    def secondaries(self) -> List[NodeSpec]:
        return [n for n in self.nodes if n.role == NodeRole.SECONDARY]

    def by_name(self) -> dict[str, NodeSpec]:
        return {n.name: n for n in self.nodes}
