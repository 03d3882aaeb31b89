# cell.py
from __future__ import annotations

import os
import shlex
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Protocol

from .errors import TOOL_HINTS, CIError
from .git_facts.git import checkout_commands
from .model import CellArchives, CellResult, CellSpec, Pipeline, StepResult
from .publish import artifact_names, package_cell
from .reports import ReportCollector
from .settings import Settings
from .step_workflows.autotools import build_command, check_command, configure_command, install_command
from .step_workflows.kyua import KyuaStore, about_command
from .step_workflows.provision import provision_commands
from .toolchain import BUILD_DIR, INST_DIR, SRC_DIR, ToolchainEnvironment, resolve_cell
from .ui.console import get_console

# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

PROVISION = "provision"
CHECKOUT = "checkout"
ENVIRONMENT = "environment"
BUILD = "build"
TEST = "test"
REPORT = "report"
INSTALL = "install"
ARCHIVE = "archive"

STEP_ORDER = (PROVISION, CHECKOUT, ENVIRONMENT, BUILD, TEST, REPORT, INSTALL, ARCHIVE)

# a nonzero exit here abandons every forward step of the cell
FATAL_STEPS = frozenset({PROVISION, CHECKOUT, ENVIRONMENT, BUILD})
# steps abandoned when the run is cancelled; report and archive still run
FORWARD_STEPS = frozenset({PROVISION, CHECKOUT, ENVIRONMENT, BUILD, TEST, INSTALL})

REPORT_SUBDIR = "html"


class StepLedger:
    """Ordered record of executed steps. Skipped steps are never recorded."""

    def __init__(self) -> None:
        self._results: List[StepResult] = []

    def record(self, result: StepResult) -> None:
        self._results.append(result)

    def __iter__(self) -> Iterator[StepResult]:
        return iter(self._results)

    def __len__(self) -> int:
        return len(self._results)

    @property
    def results(self) -> tuple[StepResult, ...]:
        return tuple(self._results)

    def get(self, name: str) -> Optional[StepResult]:
        for r in self._results:
            if r.name == name:
                return r
        return None

    def ran(self, name: str) -> bool:
        return self.get(name) is not None

    def succeeded(self, name: str) -> bool:
        r = self.get(name)
        return r is not None and r.ok

    def fatal_failure(self) -> Optional[StepResult]:
        for r in self._results:
            if r.name in FATAL_STEPS and not r.ok:
                return r
        return None


# ---------------------------------------------------------------------
# Eligibility: pure predicates over (ledger so far, cell)
# ---------------------------------------------------------------------

Predicate = Callable[[StepLedger, CellSpec], bool]


def _always(ledger: StepLedger, cell: CellSpec) -> bool:
    return True


def _no_fatal_failure(ledger: StepLedger, cell: CellSpec) -> bool:
    return ledger.fatal_failure() is None


def _build_succeeded(ledger: StepLedger, cell: CellSpec) -> bool:
    return _no_fatal_failure(ledger, cell) and ledger.succeeded(BUILD)


def _tests_ran(ledger: StepLedger, cell: CellSpec) -> bool:
    return ledger.ran(TEST)


def _installable(ledger: StepLedger, cell: CellSpec) -> bool:
    # instrumented binaries are never published as installable artifacts
    return ledger.succeeded(BUILD) and ledger.succeeded(TEST) and cell.plain


ELIGIBILITY: Dict[str, Predicate] = {
    PROVISION: _always,
    CHECKOUT: _no_fatal_failure,
    ENVIRONMENT: _no_fatal_failure,
    BUILD: _no_fatal_failure,
    TEST: _build_succeeded,
    REPORT: _tests_ran,
    INSTALL: _installable,
    ARCHIVE: _always,
}


def eligible(step: str, ledger: StepLedger, cell: CellSpec) -> bool:
    return ELIGIBILITY[step](ledger, cell)


def skip_reason(step: str, ledger: StepLedger, cell: CellSpec) -> str:
    fatal = ledger.fatal_failure()
    if step == REPORT:
        return "tests did not run"
    if step == INSTALL and cell.plain is False:
        return "instrumented build"
    if fatal is not None:
        return f"fatal failure in {fatal.name}"
    if step == INSTALL:
        return "build or tests failed"
    return "not eligible"


# ---------------------------------------------------------------------
# Execution primitives
# ---------------------------------------------------------------------

class CommandRunner(Protocol):
    def __call__(self, argv: List[str], *, cwd: Path, env: Dict[str, str], log: Path) -> int:
        ...


def run_command(argv: List[str], *, cwd: Path, env: Dict[str, str], log: Path) -> int:
    """Run one external command to completion, appending its output to `log`."""
    with log.open("a", encoding="utf-8") as f:
        f.write(f"$ {shlex.join(argv)}\n")
        f.flush()
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=f,
                stderr=subprocess.STDOUT,
            )
        except FileNotFoundError:
            tool = Path(argv[0]).name
            hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
            f.write(f"command not found: {argv[0]}\nHint: {hint}\n")
            return 127
        f.write(f"[exit {proc.returncode}]\n")
        return proc.returncode


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _reset_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


@dataclass
class _CellRun:
    """Mutable per-cell state; never shared between cells."""
    cell: CellSpec
    root: Path
    ledger: StepLedger = field(default_factory=StepLedger)
    toolchain: Optional[ToolchainEnvironment] = None
    archives: CellArchives = CellArchives()
    test_exit: Optional[int] = None
    error: Optional[str] = None
    interrupted: bool = False

    @property
    def home(self) -> Path:
        # HOME for the test step; kyua keeps its store and logs in $HOME/.kyua
        return self.root / "home"

    @property
    def kyua_home(self) -> Path:
        return self.home / ".kyua"

    @property
    def source(self) -> Path:
        return self.root / SRC_DIR

    @property
    def build(self) -> Path:
        return self.root / BUILD_DIR

    @property
    def install(self) -> Path:
        return self.root / INST_DIR

    @property
    def report_dir(self) -> Path:
        return self.build / REPORT_SUBDIR

    @property
    def logs(self) -> Path:
        return self.root / "logs"

    @property
    def dist(self) -> Path:
        return self.root / "dist"


# ---------------------------------------------------------------------
# Cell executor
# ---------------------------------------------------------------------

class CellExecutor:
    """
    Runs the step chain for one cell:

      provision -> checkout -> environment -> build -> test
        -> report -> install -> archive

    Steps are strictly sequential. Fatal steps abort the forward chain;
    a failing test step is recorded and reporting continues; install and
    archive failures are logged only. Archive always runs.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        settings: Settings,
        *,
        runner: CommandRunner = run_command,
        collector: Optional[ReportCollector] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.pipeline = pipeline
        self.settings = settings
        self.runner = runner
        self.collector = collector or ReportCollector()
        self.cancel = cancel or threading.Event()
        self._actions: Dict[str, Callable[[_CellRun, Path], int]] = {
            PROVISION: self._provision,
            CHECKOUT: self._checkout,
            ENVIRONMENT: self._environment,
            BUILD: self._build,
            TEST: self._test,
            REPORT: self._report,
            INSTALL: self._install,
            ARCHIVE: self._archive,
        }

    def workspace_for(self, cell: CellSpec) -> Path:
        return self.settings.workspace.resolve() / artifact_names(self.pipeline.project, cell).bundle

    def execute(self, cell: CellSpec) -> CellResult:
        run = _CellRun(cell=cell, root=self.workspace_for(cell))
        run.root.mkdir(parents=True, exist_ok=True)
        # outputs of a previous run in the same workspace must not be archived
        for stale in (run.build, run.install, run.logs, run.dist, run.home):
            _reset_dir(stale)

        console = get_console()
        console.print_cell_start(cell.label)
        for step in STEP_ORDER:
            self._maybe_run(run, step)

        result = CellResult(
            cell=cell,
            steps=run.ledger.results,
            archives=run.archives,
            error=run.error,
            interrupted=run.interrupted,
        )
        console.print_cell_done(cell.label, result.outcome.value)
        return result

    def _maybe_run(self, run: _CellRun, step: str) -> None:
        console = get_console()
        label = run.cell.label

        disabled = step == PROVISION and not self.settings.provision
        if step in FORWARD_STEPS and self.cancel.is_set():
            if not disabled and eligible(step, run.ledger, run.cell):
                run.interrupted = True
            console.print_step_skipped(label, step, "run cancelled")
            return
        if disabled:
            console.print_step_skipped(label, step, "provisioning disabled")
            return
        if not eligible(step, run.ledger, run.cell):
            console.print_step_skipped(label, step, skip_reason(step, run.ledger, run.cell))
            return

        console.print_step(label, step)
        log = run.logs / f"{len(run.ledger) + 1:02d}-{step}.log"
        started = _now()
        try:
            code = self._actions[step](run, log)
        except Exception as e:
            with log.open("a", encoding="utf-8") as f:
                f.write(f"{type(e).__name__}: {e}\n")
            code = 1
            if step in FATAL_STEPS:
                run.error = str(e)
            console.print_debug(f"[{label}] {step}: {e!r}")
        run.ledger.record(StepResult(name=step, exit_code=code, started_at=started, finished_at=_now()))

        if code != 0:
            fatal = step in FATAL_STEPS
            console.print_step_failure(label, step, code, fatal)
            if fatal and run.error is None:
                run.error = f"{step} failed (exit={code})"
            if step not in FATAL_STEPS and step != TEST:
                console.print_warning(f"[{label}] best-effort step '{step}' failed; see {log}")

    # ---- environment for external commands ----

    def _env(self, run: _CellRun) -> Dict[str, str]:
        env = os.environ.copy()
        if run.toolchain is not None:
            env.update(run.toolchain.as_env())
        return env

    # ---- step actions: return the step's exit code ----

    def _provision(self, run: _CellRun, log: Path) -> int:
        commands = provision_commands(run.cell.platform, run.cell.compiler)
        if not commands:
            log.write_text("no packages declared\n", encoding="utf-8")
        for cmd in commands:
            code = self.runner(cmd.argv, cwd=run.root, env=self._env(run), log=log)
            if code != 0 and not cmd.tolerate_failure:
                return code
        return 0

    def _checkout(self, run: _CellRun, log: Path) -> int:
        repository, ref = self.pipeline.repository, self.pipeline.ref or "HEAD"
        if not repository:
            raise CIError(
                kind="config",
                cell=run.cell.label,
                step=CHECKOUT,
                message="pipeline declares no repository to check out",
            )
        for argv in checkout_commands(repository, ref, run.source):
            code = self.runner(argv, cwd=run.root, env=self._env(run), log=log)
            if code != 0:
                return code
        return 0

    def _environment(self, run: _CellRun, log: Path) -> int:
        run.toolchain = resolve_cell(run.cell, run.root)
        with log.open("a", encoding="utf-8") as f:
            for key, value in sorted(run.toolchain.as_env().items()):
                f.write(f"{key}={value}\n")
            flags = " ".join(run.cell.flags) or "<none>"
            f.write(f"instrumentation={flags}\n")
        # diagnostics only; their exit codes do not gate anything
        env = self._env(run)
        self.runner(["uname", "-a"], cwd=run.root, env=env, log=log)
        self.runner(about_command(), cwd=run.root, env=env, log=log)
        return 0

    def _build(self, run: _CellRun, log: Path) -> int:
        tc = run.toolchain
        run.build.mkdir(parents=True, exist_ok=True)
        env = self._env(run)
        configure = configure_command(
            run.cell,
            tc,
            configure_args=self.pipeline.configure_args,
            script=self.pipeline.configure_script,
        )
        code = self.runner(configure, cwd=run.build, env=env, log=log)
        if code != 0:
            return code
        return self.runner(build_command(tc), cwd=run.build, env=env, log=log)

    def _test(self, run: _CellRun, log: Path) -> int:
        run.home.mkdir(parents=True, exist_ok=True)
        env = self._env(run)
        env["HOME"] = str(run.home)
        run.test_exit = self.runner(check_command(), cwd=run.build, env=env, log=log)
        return run.test_exit

    def _report(self, run: _CellRun, log: Path) -> int:
        store = KyuaStore.for_build_dir(run.kyua_home, run.build)
        bundle = self.collector.collect(store, run.report_dir, exit_code=run.test_exit)
        with log.open("a", encoding="utf-8") as f:
            f.write(f"store={store.results_file or '<none>'}\n")
            for path in bundle.files():
                f.write(f"wrote {path}\n")
        return 0

    def _install(self, run: _CellRun, log: Path) -> int:
        return self.runner(install_command(), cwd=run.build, env=self._env(run), log=log)

    def _archive(self, run: _CellRun, log: Path) -> int:
        names = artifact_names(self.pipeline.project, run.cell)
        install_tree = run.install if run.ledger.succeeded(INSTALL) else None
        run.archives = package_cell(
            names,
            run.dist,
            install_tree=install_tree,
            report_dir=run.report_dir,
            step_logs=run.logs,
            build_log=run.build / "config.log",
        )
        with log.open("a", encoding="utf-8") as f:
            for path in (run.archives.install, run.archives.report):
                if path is not None:
                    f.write(f"packaged {path}\n")
        return 0
