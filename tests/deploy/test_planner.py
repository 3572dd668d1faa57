from kubestrap.deploy.planner import plan, build_phases, Phase, UnknownDependencyError, CyclicDependencyError
from kubestrap.config.models import ClusterConfig
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import PlanComputed, PlanFailed

class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)

def _cfg(workers=1, manifest=None):
    nodes = [{"name": "master", "role": "primary", "private_address": "10.0.0.10"}]
    nodes += [{"name": f"worker-{i}", "role": "secondary", "private_address": f"10.0.0.{20 + i}"} for i in range(workers)]
    data = {"name": "demo", "nodes": nodes}
    if manifest:
        data["manifest"] = {"source": manifest}
    return ClusterConfig.model_validate(data)

def test_plan_orders_dependencies_and_emits_event():
    a = Phase("a")
    b = Phase("b", dependencies=["a"])
    c = Phase("c", dependencies=["b"])
    cap = Capture()
    ordered = plan([c, b, a], bus=EventBus([cap]))
    assert [p.name for p in ordered] == ["a", "b", "c"]
    pc = next(e for e in cap.events if isinstance(e, PlanComputed))
    assert pc.order == ["a", "b", "c"]

def test_bootstrap_graph_puts_joins_after_credentials():
    order = [p.name for p in plan(build_phases(_cfg(workers=2)))]
    assert order[0] == "packages:master"
    assert order.index("packages:worker-0") < order.index("join:worker-0")
    assert order.index("init") < order.index("overlay") < order.index("ready") < order.index("credentials")
    assert order.index("credentials") < order.index("join:worker-0")
    assert order.index("credentials") < order.index("join:worker-1")
    assert "manifest" not in order

def test_manifest_phase_only_when_configured():
    phases = build_phases(_cfg(manifest={"type": "bucket", "bucket": "b", "key": "k.yaml"}))
    m = next(p for p in phases if p.name == "manifest")
    assert m.dependencies == ["ready"]
    assert "warn-and-continue" in m.description

def test_plan_unknown_dep_raises_and_emits_failure():
    bad = Phase("x", dependencies=["missing"])
    cap = Capture()
    try:
        plan([bad], bus=EventBus([cap]))
        assert False, "expected UnknownDependencyError"
    except UnknownDependencyError:
        pf = next(e for e in cap.events if isinstance(e, PlanFailed))
        assert "unknown phase" in pf.error

def test_plan_cycle_detected_and_emits_failure():
    a = Phase("a", dependencies=["b"])
    b = Phase("b", dependencies=["a"])
    cap = Capture()
    try:
        plan([a, b], bus=EventBus([cap]))
        assert False, "expected CyclicDependencyError"
    except CyclicDependencyError:
        kinds = {e.__class__.__name__ for e in cap.events}
        assert "PlanFailed" in kinds
