# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/utils/ssh_runner.py

from __future__ import annotations

import logging
import os
import socket
import time
from itertools import count
from typing import Callable, Optional, Protocol

import paramiko

from kubestrap.errors import TimeoutFailure, TransientRemoteFailure

log = logging.getLogger("kubestrap")

REDACTED = "<redacted>"

_tmp_counter = count(1)

_CHUNK = 32768


def shq(value: str) -> str:
    """
    Quote for bash -lc.
    """
    return "'" + value.replace("'", "'\"'\"'") + "'"


class RemoteCommandRunner(Protocol):
    """
    Contract for executing shell commands on one host.
    run() returns (rc, stdout, stderr) and raises TimeoutFailure when the
    command or the session outlives its bound.
    """

    label: str

    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
        sensitive: bool = False,
    ) -> tuple[int, str, str]: ...

    def check(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
        sensitive: bool = False,
    ) -> str: ...

    def put_text(self, content: str, remote_path: str, *, sudo: bool = False, mode: int = 0o644) -> None: ...

    def get_text(self, remote_path: str) -> str: ...

    def close(self) -> None: ...


class SSHRunner:
    """
    Runs commands over an established paramiko session.

    The session has an overall deadline (session_timeout); every command
    gets min(command timeout, time left). Any timeout cancels the session.
    """

    def __init__(
        self,
        client: paramiko.SSHClient,
        *,
        label: str,
        session_timeout: Optional[float] = None,
        command_timeout: Optional[float] = None,
        poll_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.label = label
        self.session_timeout = session_timeout
        self.command_timeout = command_timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._deadline = clock() + session_timeout if session_timeout else None
        self._cancelled = False

    # ------------------ budget ------------------

    def _budget(self, timeout: Optional[float], what: str) -> Optional[float]:
        if self._cancelled:
            raise TimeoutFailure(f"ssh session to {self.label} (cancelled)", self.session_timeout or 0)

        budget = timeout if timeout is not None else self.command_timeout
        if self._deadline is None:
            return budget

        remaining = self._deadline - self._clock()
        if remaining <= 0:
            self.cancel()
            raise TimeoutFailure(f"ssh session to {self.label} ({what})", self.session_timeout)
        return remaining if budget is None else min(budget, remaining)

    def _expire_if_due(self, started: float, budget: Optional[float], shown: str) -> None:
        now = self._clock()
        if self._deadline is not None and now >= self._deadline:
            self.cancel()
            raise TimeoutFailure(f"ssh session to {self.label} ({shown})", self.session_timeout)
        if budget is not None and now - started >= budget:
            self.cancel()
            raise TimeoutFailure(f"'{shown}' on {self.label}", budget)

    def _drain(self, channel, budget: Optional[float], shown: str) -> tuple[bytes, bytes, int]:
        """
        Read both streams until the command exits. The deadline is checked
        on every pass, so a command that never stops printing still expires.
        """
        started = self._clock()
        out: list[bytes] = []
        err: list[bytes] = []
        while True:
            self._expire_if_due(started, budget, shown)
            progressed = False
            if channel.recv_ready():
                out.append(channel.recv(_CHUNK))
                progressed = True
            if channel.recv_stderr_ready():
                err.append(channel.recv_stderr(_CHUNK))
                progressed = True
            if progressed:
                continue
            if channel.exit_status_ready():
                break
            self._sleep(self.poll_interval)
        return b"".join(out), b"".join(err), channel.recv_exit_status()

    def cancel(self) -> None:
        if not self._cancelled:
            log.warning("[%s] cancelling ssh session", self.label)
        self._cancelled = True
        self.client.close()

    # ------------------ commands ------------------

    def run(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
        sensitive: bool = False,
    ) -> tuple[int, str, str]:
        shown = REDACTED if sensitive else cmd
        budget = self._budget(timeout, shown)

        wrapped = f"sudo -H bash -lc {shq(cmd)}" if sudo else f"bash -lc {shq(cmd)}"
        log.debug("[%s] $ %s", self.label, shown)

        try:
            stdin, stdout, stderr = self.client.exec_command(wrapped, timeout=budget)
            raw_out, raw_err, rc = self._drain(stdout.channel, budget, shown)
        except socket.timeout as exc:
            self.cancel()
            raise TimeoutFailure(f"'{shown}' on {self.label}", budget or 0) from exc
        except (paramiko.SSHException, OSError) as exc:
            raise TransientRemoteFailure(
                f"[{self.label}] ssh error while running '{shown}': {exc}"
            ) from exc

        out = raw_out.decode("utf-8", errors="replace")
        err = raw_err.decode("utf-8", errors="replace")
        log.debug("[%s] exit %d", self.label, rc)
        if rc != 0 and not sensitive:
            log.debug("[%s][stderr] %s", self.label, err.strip())
        return rc, out, err

    def check(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        timeout: Optional[float] = None,
        sensitive: bool = False,
    ) -> str:
        """
        Like run(), but a non-zero exit raises TransientRemoteFailure.
        """
        rc, out, err = self.run(cmd, sudo=sudo, timeout=timeout, sensitive=sensitive)
        if rc != 0:
            shown = REDACTED if sensitive else cmd
            detail = "" if sensitive else f": {(err or out).strip()}"
            raise TransientRemoteFailure(
                f"[{self.label}] command failed (rc={rc}): {shown}{detail}",
                rc=rc,
                stdout="" if sensitive else out,
                stderr="" if sensitive else err,
            )
        return out

    # ------------------ files ------------------

    def put_text(self, content: str, remote_path: str, *, sudo: bool = False, mode: int = 0o644) -> None:
        """
        Upload content through SFTP. With sudo, write a temp file first and
        install it into place so root-owned targets keep their ownership.
        """
        self._budget(None, f"upload {remote_path}")
        target = remote_path
        if sudo:
            target = f"/tmp/.kubestrap.tmp.{os.getpid()}.{next(_tmp_counter)}"

        try:
            sftp = self.client.open_sftp()
            try:
                with sftp.open(target, "w") as f:
                    f.write(content)
                if not sudo:
                    sftp.chmod(target, mode)
            finally:
                sftp.close()
        except socket.timeout as exc:
            self.cancel()
            raise TimeoutFailure(f"upload of {remote_path} to {self.label}", self.command_timeout or 0) from exc
        except (paramiko.SSHException, OSError) as exc:
            raise TransientRemoteFailure(f"[{self.label}] upload of {remote_path} failed: {exc}") from exc

        if sudo:
            self.check(
                f"install -D -m {oct(mode)[2:]} {target} {remote_path} && rm -f {target}",
                sudo=True,
            )

    def get_text(self, remote_path: str) -> str:
        """
        Secure remote copy of a file readable by the session user.
        """
        self._budget(None, f"download {remote_path}")
        try:
            sftp = self.client.open_sftp()
            try:
                with sftp.open(remote_path, "r") as f:
                    data = f.read()
            finally:
                sftp.close()
        except socket.timeout as exc:
            self.cancel()
            raise TimeoutFailure(f"download of {remote_path} from {self.label}", self.command_timeout or 0) from exc
        except (paramiko.SSHException, OSError) as exc:
            raise TransientRemoteFailure(f"[{self.label}] download of {remote_path} failed: {exc}") from exc

        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        return data

    def close(self) -> None:
        self.client.close()
