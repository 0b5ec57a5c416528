"""
CLI: ``buildpod`` — run one build worker on the cluster or locally.

Usage::

    buildpod run --build-config b1 --build-number 5 --image quay.io/x/y:latest
    buildpod run --build-file build.json --index 1 --env FOO=bar --json
    buildpod spec --build-file build.json --cluster-minor 11
    buildpod --version
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from buildpod import __version__
from buildpod.config import WorkerSettings
from buildpod.logging import configure_logging
from buildpod.runtimes import (
    BuildMetadata,
    ExecutionResult,
    TerminationSignal,
    UnitSpecBuilder,
    VersionInfo,
    WorkerEngine,
    WorkerError,
    select_profile,
)

app = typer.Typer(
    name="buildpod",
    help="buildpod — run build workers as cluster pods or local podman containers.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()
err_console = Console(stderr=True)
log = structlog.get_logger()


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"buildpod {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    log_format: str | None = typer.Option(None, "--log-format", help="console or json."),
) -> None:
    """buildpod CLI — build worker execution engine."""
    configure_logging(level=log_level, format=log_format)  # type: ignore[arg-type]


# ── Helpers ──────────────────────────────────────────────────────────────


def parse_env(pairs: list[str]) -> list[tuple[str, str]]:
    """Parse repeated ``KEY=VALUE`` options, keeping their order."""
    env: list[tuple[str, str]] = []
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--env")
        env.append((key, value))
    return env


def load_build(
    build_file: Path | None,
    build_config: str | None,
    build_number: str | None,
    image: str | None,
) -> BuildMetadata:
    """Build metadata from a Build object file, with flags taking precedence."""
    base = BuildMetadata(build_config="", build_number="", image="")
    if build_file is not None:
        base = BuildMetadata.from_build_object(json.loads(build_file.read_text()))
    return BuildMetadata(
        build_config=build_config or base.build_config,
        build_number=build_number or base.build_number,
        image=image or base.image,
        labels=base.labels,
        service_account=base.service_account,
    )


def render_result(result: ExecutionResult, *, as_json: bool = False) -> None:
    if as_json:
        console.print_json(json.dumps(result.to_dict(), default=str))
        return

    table = Table(title=f"Worker {result.unit}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Backend", result.backend)
    if result.error is None:
        table.add_row("Status", "[green]succeeded[/green]")
    else:
        table.add_row("Status", f"[red]{result.error.kind.value}[/red]")
        table.add_row("Message", result.error.message)
        if result.exit_code is not None:
            table.add_row("Exit code", str(result.exit_code))
    for err in result.log_errors:
        table.add_row("Log error", f"[yellow]{err}[/yellow]")
    console.print(table)


# ── Commands ─────────────────────────────────────────────────────────────


_BUILD_FILE = typer.Option(None, "--build-file", "-f", help="Build object as JSON.")
_BUILD_CONFIG = typer.Option(None, "--build-config", help="Build config name.")
_BUILD_NUMBER = typer.Option(None, "--build-number", help="Build number.")
_IMAGE = typer.Option(None, "--image", help="Worker image reference.")
_INDEX = typer.Option(0, "--index", "-i", help="Worker index within the build.")
_ENV = typer.Option([], "--env", "-e", help="KEY=VALUE for the worker. Repeatable.")


@app.command()
def run(
    build_file: Path | None = _BUILD_FILE,
    build_config: str | None = _BUILD_CONFIG,
    build_number: str | None = _BUILD_NUMBER,
    image: str | None = _IMAGE,
    index: int = _INDEX,
    env: list[str] = _ENV,
    namespace: str | None = typer.Option(None, "--namespace", "-n", help="Namespace for the pod."),
    logs_dir: Path | None = typer.Option(None, "--logs-dir", help="Directory for container logs."),
    scratch_dir: Path | None = typer.Option(None, "--srv-dir", help="Pre-bound host dir for /srv (local)."),
    local: bool = typer.Option(False, "--local", help="Force the local backend."),
    json_out: bool = typer.Option(False, "--json", help="Output the result as JSON."),
) -> None:
    """Run one worker to completion and report the outcome."""
    build = load_build(build_file, build_config, build_number, image)
    try:
        settings = WorkerSettings.from_env(
            namespace=namespace,
            logs_dir=logs_dir,
            scratch_dir=scratch_dir,
            force_no_cluster=True if local else None,
        )
    except ValueError as exc:
        err_console.print(f"[bold red]Invalid settings[/bold red]: {exc}")
        raise typer.Exit(code=2) from exc

    try:
        result = asyncio.run(_run_worker(settings, build, index, parse_env(env)))
    except WorkerError as exc:
        log.error("worker_setup_failed", kind=exc.kind.value, error=exc.message)
        err_console.print(f"[bold red]Error[/bold red] ({exc.kind.value}): {exc.message}")
        raise typer.Exit(code=1) from exc

    render_result(result, as_json=json_out)
    if not result.succeeded:
        raise typer.Exit(code=1)


async def _run_worker(
    settings: WorkerSettings,
    build: BuildMetadata,
    index: int,
    env: list[tuple[str, str]],
) -> ExecutionResult:
    termination = TerminationSignal()
    termination.bind_process_signals()

    structlog.contextvars.bind_contextvars(build=build.build_config, worker=index)
    engine = await WorkerEngine.create(settings)
    log.info("worker_starting", backend=engine.backend_name, engine=repr(engine))
    try:
        result = await engine.run_worker(build, index, env, termination)
    finally:
        await engine.aclose()
    log.info(
        "worker_finished",
        unit=result.unit,
        succeeded=result.succeeded,
        kind=result.kind.value if result.kind else None,
    )
    return result


@app.command()
def spec(
    build_file: Path | None = _BUILD_FILE,
    build_config: str | None = _BUILD_CONFIG,
    build_number: str | None = _BUILD_NUMBER,
    image: str | None = _IMAGE,
    index: int = _INDEX,
    env: list[str] = _ENV,
    cluster_minor: str | None = typer.Option(
        None, "--cluster-minor", help="Cluster minor version to select the profile for.",
    ),
) -> None:
    """Print the unit spec a worker would run, as JSON."""
    build = load_build(build_file, build_config, build_number, image)
    version = VersionInfo(major="1", minor=cluster_minor) if cluster_minor else None
    try:
        unit = UnitSpecBuilder(select_profile(version)).build(build, index, parse_env(env))
    except WorkerError as exc:
        err_console.print(f"[bold red]Error[/bold red] ({exc.kind.value}): {exc.message}")
        raise typer.Exit(code=1) from exc
    console.print_json(json.dumps(unit.to_dict()))


if __name__ == "__main__":
    app()
