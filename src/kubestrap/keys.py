# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/keys.py

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import paramiko

log = logging.getLogger("kubestrap")


@dataclass(frozen=True)
class KeyPair:
    private_key_path: Path
    public_key_path: Path
    public_key: str


def public_key_path(private_key_path: str | Path) -> Path:
    p = Path(private_key_path).expanduser()
    return p.with_name(p.name + ".pub")


def generate_key_pair(
    path: str | Path,
    *,
    bits: int = 4096,
    comment: str = "kubestrap",
    overwrite: bool = False,
) -> KeyPair:
    """
    Generate the RSA access key used for the node SSH sessions.
    The private key is written 0600; its content is never logged.
    """
    private = Path(path).expanduser()
    public = public_key_path(private)
    if private.exists() and not overwrite:
        raise FileExistsError(f"{private} already exists")

    private.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    key = paramiko.RSAKey.generate(bits)
    key.write_private_key_file(str(private))
    os.chmod(private, 0o600)

    material = f"{key.get_name()} {key.get_base64()} {comment}".strip()
    public.write_text(material + "\n")
    log.info("Generated %d-bit RSA key pair at %s", bits, private)
    return KeyPair(private_key_path=private, public_key_path=public, public_key=material)


def load_public_key(private_key_path: str | Path) -> str:
    """
    Public key material for an existing pair: the .pub file when present,
    otherwise derived from the private key.
    """
    public = public_key_path(private_key_path)
    if public.is_file():
        return public.read_text().strip()
    key = paramiko.RSAKey.from_private_key_file(str(Path(private_key_path).expanduser()))
    return f"{key.get_name()} {key.get_base64()}"
