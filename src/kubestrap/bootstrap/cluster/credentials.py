# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/cluster/credentials.py

from __future__ import annotations

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Set

from pydantic import SecretStr

from kubestrap.errors import CredentialIssuanceFailure, TimeoutFailure, TransientRemoteFailure
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import CredentialFailed, CredentialIssued, new_ctx, stamp
from kubestrap.utils.ssh_runner import RemoteCommandRunner

from .initializer import preflight_flag

log = logging.getLogger("kubestrap")

TOKEN_RE = re.compile(r"^[a-z0-9]{6}\.[a-z0-9]{16}$")
CA_HASH_RE = re.compile(r"^sha256:[0-9a-f]{64}$")
ENDPOINT_RE = re.compile(r"^\S+:\d{1,5}$")


@dataclass(frozen=True)
class JoinCredential:
    """
    What a secondary needs to join: minted once per initialization,
    read-only afterwards. The token never appears in repr() or logs.
    """

    token: SecretStr
    ca_cert_hash: str
    endpoint: str

    def join_command(self, preflight: str = "ignore-all") -> str:
        return (
            f"kubeadm join {self.endpoint}"
            f" --token {self.token.get_secret_value()}"
            f" --discovery-token-ca-cert-hash {self.ca_cert_hash}"
            f"{preflight_flag(preflight)}"
        )

    @property
    def fingerprint(self) -> str:
        return _digest(self.token.get_secret_value())


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _validated(token: str, ca_cert_hash: str, endpoint: str) -> JoinCredential:
    if not TOKEN_RE.match(token):
        raise CredentialIssuanceFailure("join token is missing or malformed")
    if not CA_HASH_RE.match(ca_cert_hash):
        raise CredentialIssuanceFailure("CA cert hash is missing or malformed")
    if not ENDPOINT_RE.match(endpoint):
        raise CredentialIssuanceFailure(f"API endpoint is missing or malformed: {endpoint!r}")
    return JoinCredential(token=SecretStr(token), ca_cert_hash=ca_cert_hash, endpoint=endpoint)


# ------------------ parsing (transport independent) ------------------

def parse_join_command(text: str) -> JoinCredential:
    """
    Parse `kubeadm token create --print-join-command` output.
    Flag order does not matter; backslash line continuations are accepted.
    The offending text is never echoed back since it holds the token.
    """
    flat = text.replace("\\\n", " ")
    line = next((ln.strip() for ln in flat.splitlines() if "kubeadm join" in ln), None)
    if line is None:
        raise CredentialIssuanceFailure("no 'kubeadm join' command found in issuer output")

    words = line.split()
    try:
        endpoint = words[words.index("join") + 1]
    except (ValueError, IndexError):
        raise CredentialIssuanceFailure("no API endpoint found in join command") from None

    def flag(name: str) -> str:
        for i, w in enumerate(words):
            if w == name and i + 1 < len(words):
                return words[i + 1]
            if w.startswith(name + "="):
                return w.split("=", 1)[1]
        return ""

    return _validated(flag("--token"), flag("--discovery-token-ca-cert-hash"), endpoint)


def parse_token_output(text: str, *, endpoint: str) -> JoinCredential:
    """
    Parse the two-line output of the token + CA digest script:

        abcdef.0123456789abcdef
        <64 hex chars>

    The hash may already carry its sha256: prefix.
    """
    lines = [ln.strip() for ln in text.splitlines() if ln.strip()]
    if len(lines) < 2:
        raise CredentialIssuanceFailure(f"expected token and CA hash lines, got {len(lines)} line(s)")
    token, digest = lines[-2], lines[-1]
    if not digest.startswith("sha256:"):
        digest = f"sha256:{digest}"
    return _validated(token, digest, endpoint)


def revoke_token(runner: RemoteCommandRunner, credential: JoinCredential) -> None:
    """Delete the bootstrap token on the primary."""
    runner.check(
        f"kubeadm token delete {credential.token.get_secret_value()}",
        sudo=True,
        sensitive=True,
    )


# ------------------ issuers ------------------

class JoinCredentialIssuer(ABC):
    """
    Mints a join credential on the primary.

    Minting is not idempotent: every call creates a new token. A second
    issue() is refused until invalidate() has deleted the previous token.
    """

    strategy = "abstract"

    def __init__(
        self,
        runner: RemoteCommandRunner,
        *,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.runner = runner
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(cluster="-")
        self._current: Optional[JoinCredential] = None
        self._spent: Set[str] = set()

    @abstractmethod
    def _mint(self) -> JoinCredential: ...

    def issue(self) -> JoinCredential:
        if self._current is not None:
            raise CredentialIssuanceFailure(
                "a join credential was already issued; invalidate() it before minting another"
            )
        try:
            cred = self._mint()
            if cred.fingerprint in self._spent:
                raise CredentialIssuanceFailure("primary returned a previously issued token")
        except (TransientRemoteFailure, CredentialIssuanceFailure, TimeoutFailure) as exc:
            self.bus.emit(CredentialFailed(strategy=self.strategy, error=str(exc), **stamp(self.run_ctx)))
            if isinstance(exc, TransientRemoteFailure):
                raise CredentialIssuanceFailure(f"join credential could not be issued: {exc}") from exc
            raise

        self._current = cred
        log.info("Join credential issued (%s) for %s", self.strategy, cred.endpoint)
        self.bus.emit(CredentialIssued(strategy=self.strategy, endpoint=cred.endpoint, **stamp(self.run_ctx)))
        return cred

    def invalidate(self) -> None:
        """
        Delete the current token on the primary so a fresh one may be issued.
        """
        if self._current is None:
            return
        revoke_token(self.runner, self._current)
        self._spent.add(self._current.fingerprint)
        self._current = None
        log.info("Join credential invalidated")

    @property
    def current(self) -> Optional[JoinCredential]:
        return self._current


class LocalMintIssuer(JoinCredentialIssuer):
    """
    The primary writes its join command to a well-known path; we fetch it
    back over SFTP and parse it.
    """

    strategy = "local-mint"

    def __init__(self, runner: RemoteCommandRunner, *, join_command_path: str, **kw):
        super().__init__(runner, **kw)
        self.join_command_path = join_command_path

    def _mint(self) -> JoinCredential:
        path = self.join_command_path
        try:
            # root may not write through a stale user-owned file in sticky /tmp
            self.runner.check(
                f"set -e\n"
                f"umask 077\n"
                f"rm -f {path}\n"
                f"kubeadm token create --print-join-command > {path}\n"
                f'chown "$SUDO_USER" {path}',
                sudo=True,
            )
            text = self.runner.get_text(path)
        finally:
            self.runner.run(f"rm -f {path}", sudo=True)
        return parse_join_command(text)


CA_DIGEST_CMD = (
    "openssl x509 -pubkey -in /etc/kubernetes/pki/ca.crt"
    " | openssl rsa -pubin -outform der 2>/dev/null"
    " | openssl dgst -sha256 -hex | sed 's/^.* //'"
)


class ExternalDerivationIssuer(JoinCredentialIssuer):
    """
    Asks the primary for a new token and the CA public key digest and
    parses them into discrete fields. The endpoint comes from our side.
    """

    strategy = "external"

    def __init__(self, runner: RemoteCommandRunner, *, endpoint: str, **kw):
        super().__init__(runner, **kw)
        self.endpoint = endpoint

    def _mint(self) -> JoinCredential:
        out = self.runner.check(
            f"set -e\nkubeadm token create\n{CA_DIGEST_CMD}",
            sudo=True,
            sensitive=True,
        )
        return parse_token_output(out, endpoint=self.endpoint)


def build_issuer(
    strategy: str,
    runner: RemoteCommandRunner,
    *,
    endpoint: str,
    join_command_path: str,
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> JoinCredentialIssuer:
    if strategy == "local-mint":
        return LocalMintIssuer(runner, join_command_path=join_command_path, bus=bus, run_ctx=run_ctx)
    if strategy == "external":
        return ExternalDerivationIssuer(runner, endpoint=endpoint, bus=bus, run_ctx=run_ctx)
    raise ValueError(f"unknown credential strategy: {strategy!r}")
