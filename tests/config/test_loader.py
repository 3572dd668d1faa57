from pathlib import Path
import textwrap

import pytest
from pydantic import ValidationError

from kubestrap.config.loader import load_config

CLUSTER = textwrap.dedent("""
    name: demo
    nodes:
      - name: master
        role: primary
        private_address: 10.0.0.10
        public_address: ${MASTER_PUBLIC_IP}
      - name: worker
        role: secondary
        private_address: 10.0.0.20
    manifest:
      source:
        type: bucket
        bucket: acme-manifests
        key: app.yaml
""")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    monkeypatch.delenv("KUBESTRAP_SECRETS_FILE", raising=False)


def test_load_config_minimal_ok(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("MASTER_PUBLIC_IP", "34.1.2.3")
    f = tmp_path / "cluster.yaml"
    f.write_text(CLUSTER)
    cfg = load_config(f)

    assert cfg.name == "demo"
    assert cfg.primary().public_address == "34.1.2.3"
    assert [n.name for n in cfg.secondaries()] == ["worker"]
    # defaults
    assert cfg.ssh.session_timeout == 1200
    assert cfg.kubeadm.init_retry.max_attempts == 5
    assert cfg.kubeadm.init_retry.delay_seconds == 30
    assert cfg.kubeadm.api_wait.policy().timeout_seconds == 900
    assert cfg.manifest.on_failure == "warn-and-continue"
    assert cfg.manifest.source.type == "bucket"


def test_secrets_file_next_to_config_is_merged(tmp_path: Path):
    (tmp_path / "cluster.yaml").write_text(CLUSTER)
    (tmp_path / "secrets.yaml").write_text(textwrap.dedent("""
        ssh:
          password: hunter2
        manifest:
          source:
            token: bucket-token
    """))
    cfg = load_config(tmp_path / "cluster.yaml")
    assert cfg.ssh.password.get_secret_value() == "hunter2"
    assert cfg.manifest.source.token.get_secret_value() == "bucket-token"
    assert cfg.manifest.source.bucket == "acme-manifests"
    assert "hunter2" not in repr(cfg)


def test_secrets_file_from_env_var(tmp_path: Path, monkeypatch):
    (tmp_path / "cluster.yaml").write_text(CLUSTER)
    secrets = tmp_path / "elsewhere.yaml"
    secrets.write_text("credentials:\n  strategy: external\n")
    monkeypatch.setenv("KUBESTRAP_SECRETS_FILE", str(secrets))
    assert load_config(tmp_path / "cluster.yaml").credentials.strategy == "external"


def test_exactly_one_primary_required(tmp_path: Path):
    f = tmp_path / "cluster.yaml"
    f.write_text(textwrap.dedent("""
        nodes:
          - {name: a, role: secondary, private_address: 10.0.0.1}
          - {name: b, role: secondary, private_address: 10.0.0.2}
    """))
    with pytest.raises(ValidationError, match="exactly one primary"):
        load_config(f)


def test_duplicate_node_names_rejected(tmp_path: Path):
    f = tmp_path / "cluster.yaml"
    f.write_text(textwrap.dedent("""
        nodes:
          - {name: a, role: primary, private_address: 10.0.0.1}
          - {name: a, role: secondary, private_address: 10.0.0.2}
    """))
    with pytest.raises(ValidationError, match="duplicate"):
        load_config(f)


def test_wait_timeout_is_mandatory(tmp_path: Path):
    f = tmp_path / "cluster.yaml"
    f.write_text(textwrap.dedent("""
        nodes:
          - {name: a, role: primary, private_address: 10.0.0.1}
        kubeadm:
          node_ready_wait: {interval_seconds: 5, timeout_seconds: 0}
    """))
    with pytest.raises(ValidationError):
        load_config(f)
