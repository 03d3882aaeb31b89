# cli.py
from __future__ import annotations

import signal
import subprocess
import sys
import threading
from pathlib import Path

import click

from matrixci.git_facts.git import current_branch, head_sha, repo_root
from matrixci.model import EVENTS, MANUAL, Pipeline
from matrixci.publish import ArtifactPublisher, DirectoryArtifactStore, HttpArtifactStore, artifact_names
from matrixci.reports import ReportCollector
from matrixci.runner import MatrixOrchestrator, expand_cells, load_pipeline, select_cells
from matrixci.settings import Settings
from matrixci.step_workflows.kyua import KyuaStore
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_PIPELINE = "matrixci_pipeline.py"


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline files in the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    current_dir = Path(".")
    default = current_dir / DEFAULT_PIPELINE
    found = [default] if default.exists() else []
    for path in current_dir.glob("*_pipeline.py"):
        if path != default:
            found.append(path)
    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Raises:
        SystemExit: If no pipeline can be found or the choice is ambiguous
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists() and path.suffix != ".py":
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  matrixci run --pipeline my_pipeline.py",
            )
            sys.exit(1)
        return path

    files = find_pipeline_files()
    if not files:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", f"  {DEFAULT_PIPELINE}", "  *_pipeline.py"],
            suggestion="Create a pipeline file or pass --pipeline explicitly.",
        )
        sys.exit(1)
    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=["\n".join(f"  {f}" for f in files)],
            suggestion=f"Specify a pipeline explicitly:\n  matrixci run --pipeline {DEFAULT_PIPELINE}",
        )
        sys.exit(1)
    return files[0]


def _load(ctx, pipeline_arg: str | None) -> Pipeline:
    console = get_console()
    path = discover_pipeline(pipeline_arg)
    try:
        return load_pipeline(path)
    except Exception as e:
        console.print_error("Failed to load pipeline", f"Could not load pipeline from {path}", details=[str(e)])
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


def _fill_checkout_defaults(pipeline: Pipeline, ref: str | None) -> None:
    """Default to checking out HEAD of the repository we are running from."""
    if ref:
        pipeline.ref = ref
    if pipeline.repository and pipeline.ref:
        return
    try:
        if not pipeline.repository:
            pipeline.repository = str(repo_root())
        if not pipeline.ref:
            pipeline.ref = head_sha()
    except (subprocess.CalledProcessError, FileNotFoundError):
        get_console().print_debug("not inside a git repository; checkout source left unset")


def _install_signal_handlers(cancel: threading.Event) -> None:
    console = get_console()

    def handler(signum, frame):
        if not cancel.is_set():
            console.print_info(f"\nReceived signal {signum}, letting running cells archive before exit...")
        cancel.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: matrix build verification for native packages."""
    set_console(Console(debug=debug))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help=f"Pipeline file path (defaults to {DEFAULT_PIPELINE})")
@click.option("--event", type=click.Choice(EVENTS), default=MANUAL, show_default=True, help="Trigger event")
@click.option("--branch", default=None, help="Branch the event refers to (defaults to the current branch)")
@click.option("--platform", "platforms", multiple=True, help="Only run cells for this platform (repeatable)")
@click.option("--workers", default=None, type=int, help="Number of cells run in parallel")
@click.option("--workspace", default=None, type=click.Path(path_type=Path), help="Root of the per-cell workspaces")
@click.option("--artifacts", default=None, type=click.Path(path_type=Path), help="Directory artifact store root")
@click.option("--artifact-url", default=None, help="HTTP artifact store base URL")
@click.option("--provision/--no-provision", default=None, help="Install declared packages before building")
@click.option("--ref", default=None, help="Revision to check out (defaults to HEAD)")
@click.pass_context
def run(ctx, pipeline_arg, event, branch, platforms, workers, workspace, artifacts, artifact_url, provision, ref):
    """Run every cell of a pipeline matrix."""
    console = get_console()
    pipeline = _load(ctx, pipeline_arg)

    if branch is None:
        try:
            branch = current_branch()
        except (subprocess.CalledProcessError, FileNotFoundError):
            branch = None
    if not pipeline.accepts(event, branch):
        console.print_info(f"Pipeline '{pipeline.name}' is not triggered by {event} on {branch or '<unknown branch>'}; nothing to do.")
        return

    settings = Settings.from_env().override(
        workspace=workspace,
        artifacts=artifacts,
        artifact_url=artifact_url,
        provision=provision,
        workers=workers,
    )

    try:
        _fill_checkout_defaults(pipeline, ref)
        cells = select_cells(expand_cells(pipeline.matrix, pipeline.project), platforms)

        if settings.artifact_url:
            store = HttpArtifactStore(settings.artifact_url)
        else:
            store = DirectoryArtifactStore(settings.artifacts)
        publisher = ArtifactPublisher(store, project=pipeline.project, retention_days=pipeline.retention_days)

        cancel = threading.Event()
        _install_signal_handlers(cancel)

        console.print_run_started(
            pipeline=pipeline.name,
            event=event,
            ref=pipeline.ref or "<unset>",
            cell_count=len(cells),
        )
        orchestrator = MatrixOrchestrator(pipeline, settings, publisher=publisher, cancel=cancel)
        result = orchestrator.run_cells(cells)
        console.print_results(result.statuses(), result.outcome.value)

        if result.cancelled:
            sys.exit(130)
        sys.exit(result.exit_code)

    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help=f"Pipeline file path (defaults to {DEFAULT_PIPELINE})")
@click.pass_context
def plan(ctx, pipeline_arg):
    """Print the expanded cells and their artifact names."""
    console = get_console()
    pipeline = _load(ctx, pipeline_arg)
    try:
        cells = expand_cells(pipeline.matrix, pipeline.project)
    except ValueError as e:
        console.print_error("Invalid matrix", str(e))
        sys.exit(1)

    console.print_header(f"{pipeline.name}: {len(cells)} cell(s)")
    for cell in cells:
        console.print_plan_cell(cell.label, artifact_names(pipeline.project, cell).all())


@cli.command()
@click.option("--store", "store_path", default=None, type=click.Path(path_type=Path), help="kyua results database")
@click.option(
    "--build-dir",
    default=None,
    type=click.Path(path_type=Path),
    help="Find the newest store for this build dir under MATRIXCI_KYUA_HOME",
)
@click.option("--logs", "logs_dir", default=None, type=click.Path(path_type=Path), help="kyua log directory to copy")
@click.option("--output", required=True, type=click.Path(path_type=Path), help="Report output directory")
@click.option("--exit-code", default=None, type=int, help="Exit code of the test run, for the step summary")
def report(store_path, build_dir, logs_dir, output, exit_code):
    """Generate the report files from an existing result store."""
    console = get_console()
    store = KyuaStore(results_file=store_path, logs_dir=logs_dir)
    if store_path is None and build_dir is not None:
        found = KyuaStore.for_build_dir(Settings.from_env().kyua_home, build_dir)
        store = KyuaStore(results_file=found.results_file, logs_dir=logs_dir or found.logs_dir)
    bundle = ReportCollector().collect(store, output, exit_code=exit_code)
    for path in bundle.files():
        console.print_info(f"wrote {path}")


if __name__ == "__main__":
    cli()
