# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/cli/app.py
from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from kubestrap.bootstrap.cluster.credentials import build_issuer
from kubestrap.bootstrap.node.models import Node
from kubestrap.bootstrap.node.ssh_bootstrapper import PackageBootstrapper
from kubestrap.config.loader import load_config
from kubestrap.config.models import ClusterConfig, GitManifestSource
from kubestrap.deploy.orchestrator import ClusterOrchestrator, ssh_session_factory
from kubestrap.deploy.planner import build_phases, plan as plan_phases
from kubestrap.errors import BootstrapError
from kubestrap.inventory import resolve_nodes
from kubestrap.keys import generate_key_pair
from kubestrap.logging.log import init_logging
from kubestrap.observers.console import ConsoleObserver
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import new_ctx
from kubestrap.observers.jsonfile import JsonFileObserver
from kubestrap.observers.logger import LoggerObserver
from kubestrap.outputs import collect_outputs
from kubestrap.utils.ssh_runner import REDACTED


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="kubestrap: bootstrap a kubeadm cluster over SSH")


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def _load(config: str, outputs_file: Optional[Path] = None) -> tuple[ClusterConfig, List[Node]]:
    try:
        cfg = load_config(config)
        nodes = resolve_nodes(cfg, outputs_file)
    except (OSError, ValueError) as exc:
        typer.secho(f"Invalid configuration: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    return cfg, nodes


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def up(
    config: str = typer.Argument(..., help="Cluster definition YAML"),
    outputs_file: Optional[Path] = typer.Option(
        None,
        "--outputs-file",
        help="`terraform output -json` document supplying node addresses",
    ),
    debug: bool = typer.Option(False, "--debug"),
    events_file: Optional[Path] = typer.Option(
        None,
        "--events-file",
        help="Where to write JSON-lines lifecycle events (default: next to the log)",
    ),
):
    """Bootstrap every node and join the secondaries to the primary."""
    logger, run_id, log_path = init_logging(verbose=debug)
    cfg, nodes = _load(config, outputs_file)

    typer.echo("")
    typer.secho("kubestrap bootstrap started", bold=True)
    typer.echo(f"  Cluster  : {cfg.name}")
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    observers = [
        LoggerObserver(logger),
        JsonFileObserver(events_file or log_path.with_suffix(".jsonl")),
    ]
    if debug:
        observers.append(ConsoleObserver())
    bus = EventBus(observers=observers)

    orchestrator = ClusterOrchestrator(
        cfg,
        nodes,
        bus=bus,
        run_ctx=new_ctx(cluster=cfg.name, run_id=run_id),
    )
    report = orchestrator.run()

    typer.echo("")
    typer.echo(report.summary())
    if not report.ok:
        raise typer.Exit(code=1)

    outputs = collect_outputs(cfg, nodes)
    typer.echo("")
    typer.echo("Fetch the admin kubeconfig with:")
    typer.echo(f"  {outputs.kubeconfig_command}")


@app.command()
def plan(
    config: str = typer.Argument(..., help="Cluster definition YAML"),
):
    """Show the phase order and the steps per node without connecting anywhere."""
    cfg, nodes = _load(config)
    try:
        order = plan_phases(build_phases(cfg))
    except ValueError as exc:
        typer.secho(f"Invalid plan: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    typer.secho("Phases:", bold=True)
    for i, phase in enumerate(order, 1):
        deps = f"  (after {', '.join(phase.dependencies)})" if phase.dependencies else ""
        typer.echo(f"  {i:>2}. {phase.name:<24} {phase.description}{deps}")

    extras = ["git"] if isinstance(cfg.manifest.source, GitManifestSource) else []
    bootstrapper = PackageBootstrapper(kubernetes_version=cfg.kubeadm.kubernetes_version, extra_packages=extras)
    for node in nodes:
        typer.echo("")
        typer.secho(f"{node.name} ({node.role.value}, {node.ssh_address}):", bold=True)
        for step in bootstrapper.steps_for(node):
            flag = "" if step.critical else "  [non-critical]"
            typer.echo(f"  - {step.name}{flag}")


@app.command("join-command")
def join_command(
    config: str = typer.Argument(..., help="Cluster definition YAML"),
    outputs_file: Optional[Path] = typer.Option(None, "--outputs-file"),
    reveal: bool = typer.Option(False, "--reveal", help="Print the token instead of <redacted>"),
):
    """Mint a fresh join credential on the primary and print the join command."""
    cfg, nodes = _load(config, outputs_file)
    primary = next(n for n in nodes if n.is_primary)

    runner = None
    try:
        runner = ssh_session_factory(cfg)(primary)
        issuer = build_issuer(
            cfg.credentials.strategy,
            runner,
            endpoint=f"{primary.private_address}:{cfg.kubeadm.api_port}",
            join_command_path=cfg.credentials.join_command_path,
        )
        credential = issuer.issue()
    except BootstrapError as exc:
        typer.secho(f"Could not issue join credential: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    finally:
        if runner is not None:
            runner.close()

    cmd = credential.join_command(cfg.kubeadm.preflight)
    if not reveal:
        cmd = cmd.replace(credential.token.get_secret_value(), REDACTED)
    typer.echo(cmd)


@app.command()
def keygen(
    path: Path = typer.Argument(..., help="Private key path; the public key goes to PATH.pub"),
    bits: int = typer.Option(4096, "--bits"),
    comment: str = typer.Option("kubestrap", "--comment"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing key"),
):
    """Generate the SSH access key pair for the nodes."""
    try:
        pair = generate_key_pair(path, bits=bits, comment=comment, overwrite=force)
    except FileExistsError as exc:
        typer.secho(f"{exc} (use --force to overwrite)", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(f"private key: {pair.private_key_path}")
    typer.echo(f"public key : {pair.public_key_path}")
    typer.echo(pair.public_key)


@app.command()
def outputs(
    config: str = typer.Argument(..., help="Cluster definition YAML"),
    outputs_file: Optional[Path] = typer.Option(None, "--outputs-file"),
    fmt: str = typer.Option("json", "--format", help="json or yaml"),
):
    """Print addresses, the kubeconfig retrieval command and the access key."""
    if fmt not in ("json", "yaml"):
        raise typer.BadParameter("--format must be json or yaml")
    cfg, nodes = _load(config, outputs_file)
    data = collect_outputs(cfg, nodes).as_dict()
    if fmt == "yaml":
        typer.echo(yaml.safe_dump(data, sort_keys=False).rstrip())
    else:
        typer.echo(json.dumps(data, indent=2))


if __name__ == "__main__":
    app()
