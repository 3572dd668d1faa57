import json

import pytest

from kubestrap.errors import TransientRemoteFailure

TOKEN = "abcdef.0123456789abcdef"
CA_HASH = "sha256:" + "0f" * 32
JOIN_LINE = f"kubeadm join 10.0.0.10:6443 --token {TOKEN} --discovery-token-ca-cert-hash {CA_HASH}\n"


class FakeRunner:
    """
    Scripted RemoteCommandRunner.

    on(substring, *responses): the first registered rule whose substring is
    in the command answers. Responses are (rc, out, err) tuples or exception
    instances; they are consumed in order and the last one repeats.
    Unscripted commands succeed, except `test -f` which reports "missing".
    """

    def __init__(self, label="node"):
        self.label = label
        self.commands = []
        self.sensitive = []
        self.rules = []
        self.uploads = {}
        self.files = {}
        self.closed = 0

    def on(self, substring, *responses):
        self.rules.append((substring, list(responses)))
        return self

    def _answer(self, cmd):
        for sub, queue in self.rules:
            if sub in cmd:
                resp = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(resp, BaseException):
                    raise resp
                return resp
        if cmd.startswith("test -f"):
            return (1, "", "")
        return (0, "", "")

    def run(self, cmd, *, sudo=False, timeout=None, sensitive=False):
        self.commands.append(cmd)
        if sensitive:
            self.sensitive.append(cmd)
        return self._answer(cmd)

    def check(self, cmd, *, sudo=False, timeout=None, sensitive=False):
        rc, out, err = self.run(cmd, sudo=sudo, timeout=timeout, sensitive=sensitive)
        if rc != 0:
            raise TransientRemoteFailure(f"[{self.label}] rc={rc}", rc=rc, stdout=out, stderr=err)
        return out

    def put_text(self, content, remote_path, *, sudo=False, mode=0o644):
        self.uploads[remote_path] = content

    def get_text(self, remote_path):
        if remote_path not in self.files:
            raise TransientRemoteFailure(f"[{self.label}] no such file {remote_path}")
        return self.files[remote_path]

    def close(self):
        self.closed += 1

    def count(self, substring):
        return sum(1 for c in self.commands if substring in c)


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)

    def of(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


def _nodes_json(address, ready=True):
    return json.dumps({
        "items": [{
            "metadata": {"name": "node-" + address},
            "status": {
                "addresses": [{"type": "InternalIP", "address": address}],
                "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
            },
        }]
    })


@pytest.fixture
def fake_runner():
    return FakeRunner


@pytest.fixture
def capture():
    return Capture()


@pytest.fixture
def nodes_json():
    return _nodes_json


@pytest.fixture
def join_line():
    return JOIN_LINE


@pytest.fixture
def fake_clock():
    """A clock that advances by `step` seconds on every read."""
    def make(step=1.0):
        t = [0.0]
        def clock():
            t[0] += step
            return t[0]
        return clock
    return make
