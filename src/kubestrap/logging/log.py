# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/logging/log.py

from __future__ import annotations

import logging
from pathlib import Path
from datetime import datetime, timezone
import uuid

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(threadName)s | %(message)s"


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "kubestrap",
    verbose: bool = False,
) -> tuple[logging.Logger, str, Path]:
    """
    Set up the "kubestrap" logger for one `up` run.

    Every remote command and retry lands in ~/.kubestrap/logs/ at DEBUG;
    the terminal gets INFO unless --debug. The thread name column tells
    the per-node workers apart. Returns (logger, run_id, log_path); the
    run_id is stamped on every lifecycle event and the events file sits
    next to the log.
    """
    run_id = str(uuid.uuid4())

    if base_dir is None:
        base_dir = Path.home() / ".kubestrap" / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    # a second run in the same process must not double up handlers
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    trace = logging.FileHandler(log_path)
    trace.setLevel(logging.DEBUG)
    trace.setFormatter(formatter)

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(formatter)

    logger.addHandler(trace)
    logger.addHandler(console)

    logger.info("=== kubestrap run %s ===", run_id)
    logger.debug("trace log: %s", log_path)

    return logger, run_id, log_path
