import threading

import pytest

from kubestrap.bootstrap.cluster.credentials import parse_join_command
from kubestrap.config.models import ClusterConfig
from kubestrap.deploy.orchestrator import ClusterOrchestrator, CredentialGate
from kubestrap.errors import DependencyFailed, TimeoutFailure
from kubestrap.inventory import StaticInventory
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import (
    CredentialFailed,
    CredentialIssued,
    NodeStateChanged,
    RunStarted,
    RunSummary,
)

JOIN_PATH = "/tmp/kubeadm-join-command.sh"


def _cfg(**overrides):
    data = {
        "name": "demo",
        "nodes": [
            {"name": "master", "role": "primary", "private_address": "10.0.0.10", "public_address": "34.0.0.1"},
            {"name": "worker", "role": "secondary", "private_address": "10.0.0.20", "public_address": "34.0.0.2"},
        ],
    }
    data.update(overrides)
    return ClusterConfig.model_validate(data)


@pytest.fixture
def cluster(fake_runner, nodes_json, join_line, capture):
    """Runners for a healthy two-node cluster plus an orchestrator builder."""
    master = fake_runner("master").on("get nodes -o json", (0, nodes_json("10.0.0.10"), ""))
    master.files[JOIN_PATH] = join_line
    worker = fake_runner("worker")
    runners = {"master": master, "worker": worker}

    def build(cfg=None, **kw):
        cfg = cfg or _cfg()
        return ClusterOrchestrator(
            cfg,
            StaticInventory(cfg).nodes(),
            session_factory=lambda node: runners[node.name],
            bus=EventBus([capture]),
            sleep=lambda s: None,
            **kw,
        )

    return build, master, worker


def _states(capture, node):
    return [e.state for e in capture.of(NodeStateChanged) if e.node == node]


def test_happy_path_brings_both_nodes_to_ready(cluster, capture):
    build, master, worker = cluster
    report = build().run()

    assert report.state == "Ready", report.summary()
    assert _states(capture, "master") == ["PackagesInstalled", "ClusterInitialized", "NetworkOverlayApplied", "Ready"]
    assert _states(capture, "worker") == ["PackagesInstalled", "WaitingForPrimary", "Joined", "Ready"]

    # join is ordered after credential issuance, not by timing
    events = capture.events
    issued = next(i for i, e in enumerate(events) if isinstance(e, CredentialIssued))
    joined = next(i for i, e in enumerate(events) if isinstance(e, NodeStateChanged) and e.state == "Joined")
    assert issued < joined

    assert master.count("kubeadm init --apiserver-advertise-address=10.0.0.10") == 1
    assert worker.count("kubeadm join 10.0.0.10:6443") == 1
    assert worker.count("/dev/tcp/10.0.0.10/6443") >= 1
    assert master.closed >= 3 and worker.closed >= 2
    assert capture.of(RunStarted)[0].nodes == ["master", "worker"]
    assert capture.of(RunSummary)[0].ready == 2


def test_primary_init_succeeds_on_third_attempt(cluster):
    build, master, worker = cluster
    fail = (1, "", "kubeadm init failed")
    master.on("kubeadm init", fail, fail, (0, "", ""))
    report = build().run()
    assert report.state == "Ready"
    assert master.count("kubeadm init") == 3
    assert master.count("apply -f https://github.com/flannel-io/flannel") == 1


def test_primary_init_exhausted_fails_run_and_no_one_joins(cluster, capture):
    build, master, worker = cluster
    master.on("kubeadm init", (1, "", "kubeadm init failed"))
    report = build().run()

    assert report.state == "Failed"
    assert master.count("kubeadm init") == 5
    assert master.count("kubeadm token create") == 0
    assert worker.count("kubeadm join") == 0
    assert worker.count("/dev/tcp") == 0
    assert not capture.of(CredentialIssued) and not capture.of(CredentialFailed)

    by_name = {n.name: n for n in report.nodes}
    assert by_name["master"].state == "Failed"
    assert "5 attempts" in by_name["master"].last_error
    assert by_name["worker"].state == "Failed"
    assert "primary did not produce a join credential" in by_name["worker"].last_error


def test_malformed_external_credential_aborts_before_any_join(cluster):
    build, master, worker = cluster
    master.on("kubeadm token create", (0, "no token here\n", ""))
    report = build(_cfg(credentials={"strategy": "external"})).run()

    assert report.state == "Failed"
    assert worker.count("kubeadm join") == 0
    assert any("join credential" in e for e in report.errors)
    states = {n.name: n.state for n in report.nodes}
    assert states == {"master": "Ready", "worker": "Failed"}


def test_unreachable_primary_api_times_out_the_secondary(cluster, fake_clock):
    build, master, worker = cluster
    worker.on("/dev/tcp/", (1, "", ""))
    cfg = _cfg(kubeadm={"api_wait": {"interval_seconds": 10, "timeout_seconds": 60}})
    report = build(cfg, clock=fake_clock(10)).run()

    by_name = {n.name: n for n in report.nodes}
    assert by_name["master"].state == "Ready"
    assert by_name["worker"].state == "Failed"
    assert "timed out" in by_name["worker"].last_error
    assert worker.count("kubeadm join") == 0


@pytest.mark.parametrize("policy, expected", [("warn-and-continue", "Ready"), ("fail-run", "Failed")])
def test_manifest_failure_policy_decides_run_state(cluster, policy, expected):
    build, master, worker = cluster
    master.on("git clone", (128, "", "fatal: repository not found"))
    cfg = _cfg(manifest={
        "source": {"type": "git", "repository": "https://github.com/acme/app.git", "path": "k8s"},
        "on_failure": policy,
    })
    report = build(cfg).run()

    assert report.state == expected
    assert report.manifest.status == "FAILED"
    assert all(n.state == "Ready" for n in report.nodes)
    # git is installed on the primary for the checkout
    assert master.count("kubectl git") == 1


def test_secondary_package_failure_is_local_to_that_node(cluster):
    build, master, worker = cluster
    worker.on("apt-get install -y containerd", (100, "", "E: broken"))
    report = build().run()
    states = {n.name: n.state for n in report.nodes}
    assert states == {"master": "Ready", "worker": "Failed"}
    assert report.state == "Failed"


def test_credential_gate_hands_off_once(join_line):
    gate = CredentialGate()
    cred = parse_join_command(join_line)
    got = []

    t = threading.Thread(target=lambda: got.append(gate.wait(5)))
    t.start()
    gate.set(cred)
    t.join(5)
    assert got == [cred]
    with pytest.raises(RuntimeError):
        gate.set(cred)


def test_credential_gate_failure_and_timeout():
    failed = CredentialGate()
    failed.fail("init exhausted")
    with pytest.raises(DependencyFailed):
        failed.wait(1)

    with pytest.raises(TimeoutFailure):
        CredentialGate().wait(0.01)


def test_join_token_and_file_do_not_outlive_the_run(cluster):
    build, master, worker = cluster
    report = build().run()

    assert report.state == "Ready"
    assert master.commands.count(f"rm -f {JOIN_PATH}") == 1
    assert master.sensitive[-1] == "kubeadm token delete abcdef.0123456789abcdef"
    assert master.commands[-1] == "kubeadm token delete abcdef.0123456789abcdef"


def test_failed_revocation_is_logged_not_fatal(cluster, caplog):
    build, master, worker = cluster
    master.on("kubeadm token delete", (1, "", "token not found"))
    report = build().run()
    assert report.state == "Ready"
    assert "could not revoke the join token" in caplog.text
    assert "0123456789abcdef" not in caplog.text


def test_no_revocation_when_no_credential_was_issued(cluster):
    build, master, worker = cluster
    master.on("kubeadm init", (1, "", "kubeadm init failed"))
    build().run()
    assert master.count("kubeadm token delete") == 0


def test_unexpected_worker_error_still_produces_a_report(cluster):
    build, master, worker = cluster
    worker.on("apt-get install -y containerd", EOFError("channel closed"))
    report = build().run()

    by_name = {n.name: n for n in report.nodes}
    assert by_name["master"].state == "Ready"
    assert by_name["worker"].state == "Failed"
    assert by_name["worker"].last_error == "channel closed"
    assert report.state == "Failed"


def test_unexpected_primary_error_releases_secondaries(cluster):
    build, master, worker = cluster
    master.on("kubeadm init", KeyError("boom"))
    report = build().run()

    states = {n.name: n.state for n in report.nodes}
    assert states == {"master": "Failed", "worker": "Failed"}
    assert worker.count("kubeadm join") == 0
