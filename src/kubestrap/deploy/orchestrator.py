# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/deploy/orchestrator.py

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

from kubestrap.bootstrap.cluster.credentials import JoinCredential, build_issuer, revoke_token
from kubestrap.bootstrap.cluster.initializer import ClusterInitializer, InitOptions
from kubestrap.bootstrap.cluster.joiner import NodeJoiner, RemoteApiProbe
from kubestrap.bootstrap.cluster.manifests import (
    FailurePolicy,
    ManifestDeployer,
    ManifestOutcome,
    ManifestSource,
    build_source,
)
from kubestrap.bootstrap.node.models import Host, Node, NodeState, NodeStatus
from kubestrap.bootstrap.node.ssh_bootstrapper import PackageBootstrapper
from kubestrap.config.models import ClusterConfig, GitManifestSource
from kubestrap.errors import BootstrapError, DependencyFailed, TimeoutFailure
from kubestrap.kube.kubectl import KubectlRunner
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import NodeStateChanged, RunStarted, RunSummary, new_ctx, stamp
from kubestrap.utils.ssh import open_ssh
from kubestrap.utils.ssh_runner import RemoteCommandRunner

log = logging.getLogger("kubestrap")

SessionFactory = Callable[[Node], RemoteCommandRunner]


def ssh_session_factory(cfg: ClusterConfig) -> SessionFactory:
    """
    One fresh SSH session per call, bounded by ssh.session_timeout.
    Falls back to the generated access key when no key is configured.
    """
    s = cfg.ssh
    pkey_path = s.private_key_path.expanduser() if s.private_key_path else None
    if pkey_path is None and s.password is None:
        generated = cfg.keys.private_key_path.expanduser()
        if generated.is_file():
            pkey_path = generated

    def factory(node: Node) -> RemoteCommandRunner:
        host = Host(
            hostname=node.name,
            address=node.ssh_address,
            username=s.username,
            port=s.port,
            password=s.password.get_secret_value() if s.password else None,
            pkey_path=pkey_path,
        )
        return open_ssh(
            host,
            connect_timeout=s.connect_timeout,
            attempts=s.connect_attempts,
            delay=s.connect_delay,
            session_timeout=s.session_timeout,
            command_timeout=s.command_timeout,
        )

    return factory


class CredentialGate:
    """
    Single-producer hand-off of the join credential.

    The primary worker calls set() exactly once, or fail(); secondaries
    block in wait() until one of them happens. Nothing is read before the
    producer has finished.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._credential: Optional[JoinCredential] = None
        self._error: Optional[str] = None

    def set(self, credential: JoinCredential) -> None:
        if self._event.is_set():
            raise RuntimeError("credential gate already released")
        self._credential = credential
        self._event.set()

    def fail(self, error: BaseException | str) -> None:
        if self._event.is_set():
            return
        self._error = str(error)
        self._event.set()

    @property
    def released(self) -> bool:
        return self._event.is_set()

    @property
    def credential(self) -> Optional[JoinCredential]:
        return self._credential

    def wait(self, timeout: float) -> JoinCredential:
        if not self._event.wait(timeout):
            raise TimeoutFailure("join credential from the primary", timeout)
        if self._error is not None:
            raise DependencyFailed(f"primary did not produce a join credential: {self._error}")
        assert self._credential is not None
        return self._credential

    def clear(self) -> None:
        self._credential = None


@dataclass
class NodeOutcome:
    name: str
    role: str
    state: str
    last_error: Optional[str] = None


@dataclass
class RunReport:
    cluster: str
    nodes: List[NodeOutcome] = field(default_factory=list)
    manifest: Optional[ManifestOutcome] = None
    errors: List[str] = field(default_factory=list)

    @property
    def state(self) -> str:
        if self.errors or any(n.state != NodeState.READY.value for n in self.nodes):
            return NodeState.FAILED.value
        return NodeState.READY.value

    @property
    def ok(self) -> bool:
        return self.state == NodeState.READY.value

    def summary(self) -> str:
        lines = [f"cluster {self.cluster}: {self.state}"]
        for n in self.nodes:
            line = f"  {n.name:<20} {n.role:<10} {n.state}"
            if n.last_error:
                line += f"  ({n.last_error})"
            lines.append(line)
        if self.manifest is not None:
            line = f"  manifest {self.manifest.source}: {self.manifest.status}"
            if self.manifest.error:
                line += f"  ({self.manifest.error})"
            lines.append(line)
        for e in self.errors:
            lines.append(f"  error: {e}")
        return "\n".join(lines)


class ClusterOrchestrator:
    """
    Runs one worker thread per node.

    Packages go onto every node at once. The primary then initializes,
    applies the overlay, waits for Ready and issues the join credential;
    secondaries block on the CredentialGate before joining. A primary
    failure releases the gate with an error so no secondary ever joins.
    """

    def __init__(
        self,
        cfg: ClusterConfig,
        nodes: List[Node],
        *,
        session_factory: Optional[SessionFactory] = None,
        manifest_source: Optional[ManifestSource] = None,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self.nodes = nodes
        self.session_factory = session_factory or ssh_session_factory(cfg)
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(cluster=cfg.name)
        self._sleep = sleep
        self._clock = clock

        if manifest_source is None and cfg.manifest.source is not None:
            manifest_source = build_source(cfg.manifest.source)
        self.manifest_source = manifest_source

        extras = ["git"] if isinstance(cfg.manifest.source, GitManifestSource) else []
        self.packages = PackageBootstrapper(
            kubernetes_version=cfg.kubeadm.kubernetes_version,
            extra_packages=extras,
            bus=self.bus,
            run_ctx=self.run_ctx,
        )

        primaries = [n for n in nodes if n.is_primary]
        if len(primaries) != 1:
            raise ValueError(f"exactly one primary node is required, got {len(primaries)}")
        self.primary = primaries[0]

        self._report_lock = threading.Lock()
        self._errors: List[str] = []
        self._manifest_outcome: Optional[ManifestOutcome] = None

    # ------------------ helpers ------------------

    @contextmanager
    def _session(self, node: Node) -> Iterator[RemoteCommandRunner]:
        runner = self.session_factory(node)
        try:
            yield runner
        finally:
            runner.close()

    def _advance(self, status: NodeStatus, to: NodeState) -> None:
        status.advance(to)
        log.info("[%s] -> %s", status.node.name, to.value)
        self.bus.emit(
            NodeStateChanged(node=status.node.name, role=status.node.role.value, state=to.value, **stamp(self.run_ctx))
        )

    def _fail(self, status: NodeStatus, exc: BaseException) -> None:
        if status.terminal:
            return
        status.fail(exc)
        log.error("[%s] -> Failed: %s", status.node.name, exc)
        self.bus.emit(
            NodeStateChanged(
                node=status.node.name,
                role=status.node.role.value,
                state=NodeState.FAILED.value,
                error=str(exc),
                **stamp(self.run_ctx),
            )
        )

    def _run_error(self, message: str) -> None:
        with self._report_lock:
            self._errors.append(message)

    def _guarded(self, worker: Callable[[NodeStatus, CredentialGate], None], status: NodeStatus, gate: CredentialGate) -> None:
        """
        Worker boundary: anything that escapes a worker still ends up in the
        report instead of aborting the run.
        """
        try:
            worker(status, gate)
        except Exception as exc:
            log.exception("[%s] unexpected error", status.node.name)
            if status.terminal:
                self._run_error(f"{status.node.name}: {exc}")
            else:
                self._fail(status, exc)

    def _revoke_credential(self, credential: JoinCredential) -> None:
        try:
            with self._session(self.primary) as runner:
                revoke_token(runner, credential)
        except BootstrapError as exc:
            log.warning("[%s] could not revoke the join token: %s", self.primary.name, exc)
            return
        log.info("[%s] join token revoked", self.primary.name)

    # ------------------ primary ------------------

    def _primary_worker(self, status: NodeStatus, gate: CredentialGate) -> None:
        node = status.node
        k = self.cfg.kubeadm
        try:
            with self._session(node) as runner:
                self.packages.bootstrap(runner, node)
            self._advance(status, NodeState.PACKAGES_INSTALLED)

            with self._session(node) as runner:
                init = ClusterInitializer(
                    runner,
                    node_name=node.name,
                    retry=k.init_retry.policy(),
                    ready_wait=k.node_ready_wait.policy(),
                    recovery_command=k.init_retry.recovery_command,
                    bus=self.bus,
                    run_ctx=self.run_ctx,
                    sleep=self._sleep,
                    clock=self._clock,
                )
                opts = InitOptions(
                    advertise_address=node.private_address,
                    pod_network_cidr=k.pod_network_cidr,
                    preflight=k.preflight,
                    admin_conf=k.admin_conf,
                )
                init.initialize(opts)
                self._advance(status, NodeState.CLUSTER_INITIALIZED)

                init.install_admin_credentials(opts)
                kubectl = KubectlRunner(ssh=runner, kubeconfig=k.admin_conf)
                init.apply_network_overlay(kubectl, k.network_overlay_manifest)
                self._advance(status, NodeState.NETWORK_OVERLAY_APPLIED)

                init.wait_until_ready(kubectl, node.private_address)
            self._advance(status, NodeState.READY)

            with self._session(node) as runner:
                issuer = build_issuer(
                    self.cfg.credentials.strategy,
                    runner,
                    endpoint=f"{node.private_address}:{k.api_port}",
                    join_command_path=self.cfg.credentials.join_command_path,
                    bus=self.bus,
                    run_ctx=self.run_ctx,
                )
                gate.set(issuer.issue())
        except BootstrapError as exc:
            self._fail(status, exc)
            if status.state == NodeState.READY:
                # primary is up but secondaries cannot join: the run fails
                self._run_error(f"join credential: {exc}")
            gate.fail(exc)
            return
        finally:
            if not gate.released:
                gate.fail("primary worker exited without a join credential")

        if self.manifest_source is not None:
            self._deploy_manifest(node)

    def _deploy_manifest(self, node: Node) -> None:
        m = self.cfg.manifest
        try:
            with self._session(node) as runner:
                deployer = ManifestDeployer(
                    runner,
                    KubectlRunner(ssh=runner, kubeconfig=self.cfg.kubeadm.admin_conf),
                    policy=FailurePolicy(m.on_failure),
                    remote_path=m.remote_path,
                    bus=self.bus,
                    run_ctx=self.run_ctx,
                )
                self._manifest_outcome = deployer.deploy(self.manifest_source)
        except BootstrapError as exc:
            self._manifest_outcome = ManifestOutcome(
                source=self.manifest_source.description, status="FAILED", error=str(exc)
            )
            if m.on_failure == FailurePolicy.FAIL_RUN.value:
                self._run_error(str(exc))
            else:
                log.warning("[manifest] could not reach %s, continuing: %s", node.name, exc)

    # ------------------ secondary ------------------

    def _secondary_worker(self, status: NodeStatus, gate: CredentialGate) -> None:
        node = status.node
        k = self.cfg.kubeadm
        try:
            with self._session(node) as runner:
                self.packages.bootstrap(runner, node)
            self._advance(status, NodeState.PACKAGES_INSTALLED)

            self._advance(status, NodeState.WAITING_FOR_PRIMARY)
            log.info("[%s] Waiting for join credential from %s...", node.name, self.primary.name)
            credential = gate.wait(self.cfg.credentials.wait_timeout_seconds)

            with self._session(node) as runner:
                joiner = NodeJoiner(
                    runner,
                    node_name=node.name,
                    retry=k.join_retry.policy(),
                    api_wait=k.api_wait.policy(),
                    kubelet_wait=k.kubelet_wait.policy(),
                    preflight=k.preflight,
                    recovery_command=k.join_retry.recovery_command,
                    bus=self.bus,
                    run_ctx=self.run_ctx,
                    sleep=self._sleep,
                    clock=self._clock,
                )
                probe = RemoteApiProbe(
                    runner,
                    host=self.primary.private_address,
                    port=k.api_port,
                    mode=k.api_probe,
                )
                joiner.join(credential, probe)
                self._advance(status, NodeState.JOINED)
                joiner.wait_for_kubelet()
            self._advance(status, NodeState.READY)
        except BootstrapError as exc:
            self._fail(status, exc)

    # ------------------ run ------------------

    def run(self) -> RunReport:
        statuses: Dict[str, NodeStatus] = {n.name: NodeStatus(n) for n in self.nodes}
        gate = CredentialGate()

        log.info("Bootstrapping cluster '%s' (%d node(s))", self.cfg.name, len(self.nodes))
        self.bus.emit(RunStarted(nodes=[n.name for n in self.nodes], **stamp(self.run_ctx)))

        try:
            with ThreadPoolExecutor(max_workers=len(self.nodes), thread_name_prefix="kubestrap-node") as pool:
                futures = []
                for n in self.nodes:
                    worker = self._primary_worker if n.is_primary else self._secondary_worker
                    futures.append(pool.submit(self._guarded, worker, statuses[n.name], gate))
                for fut in futures:
                    fut.result()
            if gate.credential is not None:
                self._revoke_credential(gate.credential)
        finally:
            # the credential does not outlive the run
            gate.clear()

        report = RunReport(
            cluster=self.cfg.name,
            nodes=[
                NodeOutcome(
                    name=s.node.name,
                    role=s.node.role.value,
                    state=s.state.value,
                    last_error=s.last_error,
                )
                for s in statuses.values()
            ],
            manifest=self._manifest_outcome,
            errors=list(self._errors),
        )
        self.bus.emit(
            RunSummary(
                state=report.state,
                ready=sum(1 for n in report.nodes if n.state == NodeState.READY.value),
                failed=sum(1 for n in report.nodes if n.state == NodeState.FAILED.value),
                **stamp(self.run_ctx),
            )
        )
        log.info("Run finished: %s", report.state)
        return report
