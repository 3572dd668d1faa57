import pytest

from kubestrap.bootstrap.node.models import Node, NodeRole
from kubestrap.bootstrap.node.ssh_bootstrapper import PackageBootstrapper
from kubestrap.bootstrap.node.steps import BootstrapStep, StepRunner, package_steps
from kubestrap.errors import StepFailure, TimeoutFailure, TransientRemoteFailure
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import StepFailed, StepStarted, StepSucceeded

PRIMARY = Node(name="master", role=NodeRole.PRIMARY, private_address="10.0.0.10", public_address="34.1.1.1")
WORKER = Node(name="worker", role=NodeRole.SECONDARY, private_address="10.0.0.20")


def test_catalogue_is_shared_and_primary_prepulls_images():
    p = [s.name for s in package_steps(NodeRole.PRIMARY, kubernetes_version="1.30")]
    w = [s.name for s in package_steps(NodeRole.SECONDARY, kubernetes_version="1.30")]
    assert p[:-1] == w
    assert p[-1] == "pull-images"
    assert w[0] == "disable-swap"
    assert "install-packages" in w


def test_templates_render_version_modules_and_packages():
    steps = {s.name: s for s in package_steps(NodeRole.SECONDARY, kubernetes_version="1.29", extra_packages=["git"])}
    assert "core:/stable:/v1.29/deb" in steps["kubernetes-repo"].command
    assert "modprobe br_netfilter" in steps["kernel-modules"].command
    assert "net.ipv4.ip_forward = 1" in steps["sysctl"].command
    assert "apt-get install -y containerd kubelet kubeadm kubectl git" in steps["install-packages"].command
    assert all(s.command.startswith("set -e\n") for s in steps.values())
    assert steps["hold-packages"].critical is False


def test_full_bootstrap_happy_path(fake_runner, capture):
    r = fake_runner("master")
    bs = PackageBootstrapper(kubernetes_version="1.30", bus=EventBus([capture]))
    results = bs.bootstrap(r, PRIMARY)

    assert all(res.ok for res in results)
    assert len(r.commands) == len(results) == len(bs.steps_for(PRIMARY))
    assert r.count("swapoff -a") == 1
    assert r.count("SystemdCgroup = true") == 1
    assert len(capture.of(StepStarted)) == len(capture.of(StepSucceeded)) == len(results)


def test_extra_packages_only_go_to_the_primary(fake_runner):
    bs = PackageBootstrapper(kubernetes_version="1.30", extra_packages=["git"])
    w = fake_runner("worker")
    bs.bootstrap(w, WORKER)
    assert not any("kubectl git" in c for c in w.commands)
    p = fake_runner("master")
    bs.bootstrap(p, PRIMARY)
    assert p.count("kubectl git") == 1


def test_non_critical_failure_does_not_stop_later_steps(fake_runner, capture):
    r = fake_runner("worker").on("apt-mark hold", (1, "", "E: held broken"))
    runner = StepRunner(r, node_name="worker", bus=EventBus([capture]))
    steps = package_steps(NodeRole.SECONDARY, kubernetes_version="1.30")
    results = runner.run(steps)

    failed = [res for res in results if not res.ok]
    assert [f.step for f in failed] == ["hold-packages"]
    # everything after the tolerated failure still ran
    assert r.count("systemctl enable --now containerd kubelet") == 1
    assert [t.step for t in runner.tolerated] == ["hold-packages"]
    ev = capture.of(StepFailed)
    assert ev and ev[0].critical is False


def test_critical_failure_aborts_the_sequence(fake_runner, capture):
    r = fake_runner("worker").on("apt-get install -y containerd", (100, "", "E: Unable to locate package"))
    runner = StepRunner(r, node_name="worker", bus=EventBus([capture]))
    with pytest.raises(StepFailure) as ei:
        runner.run(package_steps(NodeRole.SECONDARY, kubernetes_version="1.30"))
    assert ei.value.step == "install-packages"
    assert isinstance(ei.value.cause, TransientRemoteFailure)
    assert r.count("containerd config default") == 0
    assert capture.of(StepFailed)[-1].critical is True


def test_timeouts_propagate_unchanged(fake_runner):
    r = fake_runner("worker").on("swapoff", TimeoutFailure("ssh session to worker", 1200))
    with pytest.raises(TimeoutFailure):
        StepRunner(r, node_name="worker").run([BootstrapStep("disable-swap", "swapoff -a", critical=False)])
