# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single bootstrap run
    cluster: str

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(cluster: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": _now(),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
    }


def stamp(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Same run, fresh timestamp."""
    return {**ctx, "ts": _now()}


# ---------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    nodes: List[str]

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    state: str        # "Ready" | "Failed"
    ready: int
    failed: int


# ---------------------------------------------------------------------
# Node state machine
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class NodeStateChanged(BaseEvent):
    node: str
    role: str
    state: str
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Bootstrap steps
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepStarted(BaseEvent):
    node: str
    step: str

@dataclass(frozen=True)
class StepSucceeded(BaseEvent):
    node: str
    step: str
    duration_ms: int

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    node: str
    step: str
    critical: bool
    error: str


# ---------------------------------------------------------------------
# Retries and waits
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RetryAttempt(BaseEvent):
    node: str
    action: str
    attempt: int
    max_attempts: int
    error: str

@dataclass(frozen=True)
class WaitStarted(BaseEvent):
    node: str
    what: str
    timeout_s: float

@dataclass(frozen=True)
class WaitSucceeded(BaseEvent):
    node: str
    what: str
    probes: int

@dataclass(frozen=True)
class WaitTimedOut(BaseEvent):
    node: str
    what: str
    timeout_s: float


# ---------------------------------------------------------------------
# Join credentials (never carries the token itself)
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class CredentialIssued(BaseEvent):
    strategy: str
    endpoint: str

@dataclass(frozen=True)
class CredentialFailed(BaseEvent):
    strategy: str
    error: str


# ---------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ManifestApplied(BaseEvent):
    source: str

@dataclass(frozen=True)
class ManifestFailed(BaseEvent):
    source: str
    policy: str
    error: str


# ---------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    order: List[str]

@dataclass(frozen=True)
class PlanFailed(BaseEvent):
    error: str
