# src/nixiform/cli/app.py
from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import List, Optional

import typer

from nixiform.cli.helper import (
    Runtime,
    build_runtime,
    finish,
    read_provisioner_output,
    reported,
)
from nixiform.config.loader import load_config
from nixiform.core.errors import NoSuchConfig, WrongUsage
from nixiform.core.models import Outcome
from nixiform.inventory.inventory import Inventory
from nixiform.logging.log import init_logging
from nixiform.nix.interface import NixError
from nixiform.utils.execution import ExecutionContext


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(
    help="Deploy NixOS configurations to nodes provisioned elsewhere.",
    no_args_is_help=True,
    add_completion=False,
)

NAMES = typer.Argument(None, help="Node names (default: every node in the inventory)")


def _runtime(ctx: typer.Context) -> Runtime:
    return ctx.obj["runtime"]


@app.callback()
def main_callback(
    ctx: typer.Context,
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", help="Nodes handled in parallel"),
    debug: bool = typer.Option(False, "--debug", help="Trace commands and output"),
    config_file: Optional[Path] = typer.Option(None, "--config", help="YAML config file"),
):
    overrides = {"jobs": jobs, "debug": True if debug else None}
    with reported():
        config = load_config(config_file, overrides=overrides)
    _, run_id, _ = init_logging(verbose=config.debug)
    ctx.obj = {"config": config, "runtime": build_runtime(config, run_id)}


# ------------------------------------------------------------------------------
# Inventory
# ------------------------------------------------------------------------------

@app.command("input")
def input_cmd(
    ctx: typer.Context,
    path: str = typer.Argument(..., help="Provisioner JSON output, or - for stdin"),
):
    """Snapshot the provisioner's node inventory into the work directory."""
    rt = _runtime(ctx)
    with reported():
        Inventory(read_provisioner_output(path)).write(rt.config.work_dir, rt.config.ssh_port)


@app.command("nodes")
def nodes_cmd(ctx: typer.Context):
    """List node names from the inventory snapshot."""
    rt = _runtime(ctx)
    with reported():
        for name in rt.inventory.names():
            typer.echo(name)


# ------------------------------------------------------------------------------
# Per-node commands
# ------------------------------------------------------------------------------

@app.command("init")
def init_cmd(ctx: typer.Context, names: Optional[List[str]] = NAMES):
    """Bootstrap unmanaged nodes and generate their modules."""
    rt = _runtime(ctx)
    with reported():
        targets = rt.names(names)

    def check(name: str):
        rt.lifecycle.check_reachable(rt.node(name))

    def manage(name: str):
        return rt.lifecycle.ensure_managed(rt.node(name))

    def module(name: str):
        return rt.lifecycle.ensure_module(rt.node(name))

    finish(
        rt.executor.run_stages(targets, [("check", check), ("manage", manage), ("module", module)]),
        "init",
    )


@app.command("check")
def check_cmd(ctx: typer.Context, names: Optional[List[str]] = NAMES):
    """Check that nodes are reachable."""
    rt = _runtime(ctx)
    with reported():
        targets = rt.names(names)

    def check(name: str):
        rt.lifecycle.check_reachable(rt.node(name))

    finish(rt.executor.run(targets, check, stage="check"), "check")


@app.command("build")
def build_cmd(ctx: typer.Context, names: Optional[List[str]] = NAMES):
    """Build node configurations locally."""
    rt = _runtime(ctx)
    with reported():
        targets = rt.names(names)

    def build(name: str):
        artifact = rt.lifecycle.build(rt.node(name))
        typer.echo(f"{name} {artifact}")
        return artifact

    finish(rt.executor.run(targets, build, stage="build"), "build")


@app.command("push")
def push_cmd(
    ctx: typer.Context,
    names: Optional[List[str]] = NAMES,
    local: bool = typer.Option(False, "-l", "--local", help="Realise locally, then copy the result"),
    bundle: bool = typer.Option(False, "-b", "--bundle", help="Send the closure as one compressed stream"),
    dry: bool = typer.Option(False, "-d", "--dry-activate", help="Dry-activate; change nothing on the node"),
    reboot: bool = typer.Option(False, "-r", "--reboot", help="Reboot when activation requires it"),
):
    """Build, check, sync secrets, then transfer and activate."""
    rt = _runtime(ctx)
    with reported():
        if local and bundle:
            raise WrongUsage("-l and -b are mutually exclusive")
        targets = rt.names(names)

    transfer = "local" if local else "bundle" if bundle else "remote"
    operation = "dry-activate" if dry else "switch"
    exec_ctx = ExecutionContext(dry_run=dry)
    artifacts = {}

    def build(name: str):
        artifacts[name] = rt.lifecycle.build(rt.node(name), realize=transfer != "remote")
        return artifacts[name]

    def check(name: str):
        rt.lifecycle.check_reachable(rt.node(name))

    def secrets(name: str):
        return rt.secrets.sync(rt.node(name), ctx=exec_ctx)

    def push(name: str) -> Outcome:
        return rt.pusher.push(
            rt.node(name),
            artifacts[name],
            operation=operation,
            transfer=transfer,
            auto_reboot=reboot,
        )

    report = rt.executor.run_stages(
        targets,
        [("build", build), ("check", check), ("secrets", secrets), ("push", push)],
    )
    finish(report, "push")


@app.command("secret")
def secret_cmd(
    ctx: typer.Context,
    names: Optional[List[str]] = NAMES,
    dry: bool = typer.Option(False, "-d", "--dry-run", help="Only report what would change"),
    force: bool = typer.Option(False, "-f", "--force", help="Re-send every secret and re-apply ownership"),
):
    """Synchronise secret files to nodes."""
    rt = _runtime(ctx)
    with reported():
        targets = rt.names(names)
    exec_ctx = ExecutionContext(dry_run=dry)

    def sync(name: str):
        node = rt.node(name)
        rt.lifecycle.check_reachable(node)
        return rt.secrets.sync(node, ctx=exec_ctx, force=force)

    finish(rt.executor.run(targets, sync, stage="secrets"), "secret")


@app.command("diff")
def diff_cmd(ctx: typer.Context, names: Optional[List[str]] = NAMES):
    """Show closure differences between running and built systems."""
    rt = _runtime(ctx)
    with reported():
        targets = rt.names(names)

    def diff(name: str):
        node = rt.node(name)
        artifact = rt.lifecycle.build(node, realize=False)
        rt.lifecycle.check_reachable(node)
        out = rt.pusher.diff(node, artifact)
        typer.echo(f"--- {name}\n{out.rstrip()}")
        return out

    finish(rt.executor.run(targets, diff, stage="diff"), "diff")


# ------------------------------------------------------------------------------
# Single-node helpers
# ------------------------------------------------------------------------------

@app.command("output")
def output_cmd(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Node name"),
    expr: str = typer.Argument(..., help="Attribute path under the node's config"),
):
    """Evaluate an attribute of a node's configuration as JSON."""
    rt = _runtime(ctx)
    with reported():
        rt.node(name)
        try:
            value = rt.nix.evaluate(name, expr)
        except NixError as e:
            raise NoSuchConfig(f"cannot evaluate {expr} for {name}: {e}") from e
    typer.echo(json.dumps(value, indent=2, sort_keys=True))


@app.command("ssh")
def ssh_cmd(ctx: typer.Context, name: str = typer.Argument(..., help="Node name")):
    """Open an interactive shell on a node."""
    rt = _runtime(ctx)
    with reported():
        node = rt.node(name)
    raise typer.Exit(subprocess.call(rt.remote.ssh_argv(node)))


@app.command("help")
def help_cmd(ctx: typer.Context):
    """Show this help."""
    typer.echo(ctx.parent.get_help())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
