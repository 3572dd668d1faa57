# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/config/loader.py

import logging
import os
import yaml
from pathlib import Path
from .models import ClusterConfig

log = logging.getLogger("kubestrap")

SECRETS_ENV = "KUBESTRAP_SECRETS_FILE"


def _overlay(base: dict, extra: dict) -> dict:
    """
    Fold the secrets document into the cluster definition, section by
    section. Blank values in the secrets file leave the definition alone,
    so a template secrets.yaml with empty `password:` keys is harmless.
    """
    for key, value in extra.items():
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            _overlay(base[key], value)
        elif value not in (None, ""):
            base[key] = value
    return base


def _secrets_path(cluster_file: Path) -> Path | None:
    # $KUBESTRAP_SECRETS_FILE wins; otherwise secrets.yaml beside the cluster file
    env = os.environ.get(SECRETS_ENV)
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("%s=%s does not exist, ignoring it", SECRETS_ENV, env)
        return None

    p = cluster_file.parent / "secrets.yaml"
    return p if p.is_file() else None


def _read(path: Path) -> dict:
    data = yaml.safe_load(os.path.expandvars(path.read_text())) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    return data


def load_config(path: str | Path) -> ClusterConfig:
    """
    Read a cluster definition and return the validated ClusterConfig.

    Credentials stay out of the cluster file. The SSH password, the bucket
    token and the like go into a secrets.yaml with the same shape, or into
    ``${VAR}`` placeholders that are expanded from the environment.
    Pydantic errors surface as ValueError for the CLI to report.
    """
    path = Path(path)
    data = _read(path)

    secrets = _secrets_path(path)
    if secrets:
        # log the path only: the file holds credentials
        log.debug("Overlaying secrets from %s", secrets)
        _overlay(data, _read(secrets))

    return ClusterConfig.model_validate(data)
