# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/cluster/manifests.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote

import requests

from kubestrap.config.models import (
    BucketManifestSource,
    FileManifestSource,
    GitManifestSource,
)
from kubestrap.errors import BootstrapError, ManifestDeployFailure
from kubestrap.kube.kubectl import KubectlRunner
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import ManifestApplied, ManifestFailed, new_ctx, stamp
from kubestrap.utils.ssh_runner import RemoteCommandRunner, shq

log = logging.getLogger("kubestrap")


class FailurePolicy(str, Enum):
    FAIL_RUN = "fail-run"
    WARN_AND_CONTINUE = "warn-and-continue"


@dataclass
class ManifestOutcome:
    source: str
    status: str                 # "APPLIED" | "FAILED"
    error: Optional[str] = None


class ManifestSource(Protocol):
    description: str

    def stage(self, runner: RemoteCommandRunner, remote_path: str) -> str:
        """Make the manifest available on the primary; return the path to apply."""
        ...


class GitSource:
    """Shallow checkout on the primary itself."""

    def __init__(self, spec: GitManifestSource):
        self.spec = spec
        ref = f"@{spec.ref}" if spec.ref else ""
        self.description = f"git:{spec.repository}{ref}/{spec.path}"

    def stage(self, runner: RemoteCommandRunner, remote_path: str) -> str:
        s = self.spec
        branch = f" --branch {shq(s.ref)}" if s.ref else ""
        runner.check(
            f"rm -rf {s.checkout_dir}\n"
            f"git clone --depth 1{branch} {shq(s.repository)} {s.checkout_dir}",
            timeout=300,
        )
        return f"{s.checkout_dir}/{s.path.lstrip('/')}"


class BucketSource:
    """Object storage fetch over HTTPS, uploaded to the primary via SFTP."""

    def __init__(self, spec: BucketManifestSource, session: Optional[requests.Session] = None):
        self.spec = spec
        self.session = session or requests.Session()
        self.description = f"bucket:{spec.bucket}/{spec.key}"

    @property
    def url(self) -> str:
        return f"{self.spec.endpoint.rstrip('/')}/{self.spec.bucket}/{quote(self.spec.key)}"

    def fetch(self) -> str:
        headers = {}
        if self.spec.token is not None:
            headers["Authorization"] = f"Bearer {self.spec.token.get_secret_value()}"
        r = self.session.get(self.url, headers=headers, timeout=self.spec.request_timeout)
        r.raise_for_status()
        return r.text

    def stage(self, runner: RemoteCommandRunner, remote_path: str) -> str:
        runner.put_text(self.fetch(), remote_path, mode=0o600)
        return remote_path


class FileSource:
    def __init__(self, spec: FileManifestSource):
        self.path = Path(spec.path).expanduser()
        self.description = f"file:{self.path}"

    def stage(self, runner: RemoteCommandRunner, remote_path: str) -> str:
        runner.put_text(self.path.read_text(), remote_path, mode=0o600)
        return remote_path


def build_source(spec) -> ManifestSource:
    if isinstance(spec, GitManifestSource):
        return GitSource(spec)
    if isinstance(spec, BucketManifestSource):
        return BucketSource(spec)
    if isinstance(spec, FileManifestSource):
        return FileSource(spec)
    raise ValueError(f"unsupported manifest source: {spec!r}")


class ManifestDeployer:
    """
    Fetches a workload manifest and applies it on the ready cluster.

    What a failure means is an explicit policy:
      fail-run           -> ManifestDeployFailure, the run ends Failed
      warn-and-continue  -> logged, outcome FAILED, the run carries on
    """

    def __init__(
        self,
        runner: RemoteCommandRunner,
        kubectl: KubectlRunner,
        *,
        policy: FailurePolicy = FailurePolicy.WARN_AND_CONTINUE,
        remote_path: str = "/tmp/kubestrap-manifest.yaml",
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.runner = runner
        self.kubectl = kubectl
        self.policy = FailurePolicy(policy)
        self.remote_path = remote_path
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(cluster="-")

    def deploy(self, source: ManifestSource) -> ManifestOutcome:
        log.info("[manifest] Applying %s", source.description)
        try:
            path = source.stage(self.runner, self.remote_path)
            self.kubectl.apply_file(path)
        except (BootstrapError, requests.RequestException, OSError) as exc:
            self.bus.emit(
                ManifestFailed(source=source.description, policy=self.policy.value, error=str(exc), **stamp(self.run_ctx))
            )
            if self.policy == FailurePolicy.FAIL_RUN:
                log.error("[manifest] %s failed: %s", source.description, exc)
                raise ManifestDeployFailure(f"manifest {source.description} failed: {exc}") from exc
            log.warning("[manifest] %s failed, continuing: %s", source.description, exc)
            return ManifestOutcome(source=source.description, status="FAILED", error=str(exc))

        self.bus.emit(ManifestApplied(source=source.description, **stamp(self.run_ctx)))
        log.info("[manifest] Applied %s", source.description)
        return ManifestOutcome(source=source.description, status="APPLIED")
