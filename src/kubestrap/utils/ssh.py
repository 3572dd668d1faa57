# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

import paramiko

from kubestrap.bootstrap.node.models import Host
from kubestrap.errors import FatalBootstrapError, TransientRemoteFailure
from kubestrap.utils.retry import RetryPolicy, run_with_retry
from kubestrap.utils.ssh_runner import SSHRunner

log = logging.getLogger("kubestrap")


def _load_pkey(key_path: str) -> paramiko.PKey:
    if not Path(key_path).is_file():
        raise FatalBootstrapError(f"SSH private key not found: {key_path}")
    last_exc: Optional[Exception] = None
    for key_cls in (
        paramiko.Ed25519Key,
        paramiko.RSAKey,
        paramiko.ECDSAKey,
    ):
        try:
            return key_cls.from_private_key_file(key_path)
        except paramiko.SSHException as exc:
            last_exc = exc
            continue
    raise FatalBootstrapError(f"Unsupported private key format for {key_path}: {last_exc}")


def _connect(host: Host, connect_timeout: float) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = _load_pkey(str(host.pkey_path)) if host.pkey_path else None

    try:
        client.connect(
            hostname=host.address,
            port=host.port,
            username=host.username,
            password=host.password if not pkey else None,
            pkey=pkey,
            timeout=connect_timeout,
            allow_agent=pkey is None,
            look_for_keys=pkey is None,
        )
    except (paramiko.SSHException, OSError) as exc:
        client.close()
        raise TransientRemoteFailure(
            f"Failed to SSH into {host.address} as '{host.username}': {type(exc).__name__}: {exc}"
        ) from exc
    return client


def open_ssh(
    host: Host,
    *,
    connect_timeout: float = 20.0,
    attempts: int = 10,
    delay: float = 10.0,
    session_timeout: Optional[float] = None,
    command_timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SSHRunner:
    """
    Connect to a host, retrying while a freshly provisioned VM brings sshd up.
    """
    client = run_with_retry(
        lambda: _connect(host, connect_timeout),
        RetryPolicy(max_attempts=attempts, delay_seconds=delay),
        action=f"ssh connect to {host.hostname} ({host.address})",
        sleep=sleep,
    )
    log.debug("[%s] ssh session established to %s:%d", host.hostname, host.address, host.port)
    return SSHRunner(
        client,
        label=host.hostname,
        session_timeout=session_timeout,
        command_timeout=command_timeout,
    )
