"""
Shared fixtures for the matrixci test suite.

No real toolchain is needed: external commands go through FakeRunner, which
plays configure / make / kyua well enough to drive a cell end to end, and
write_kyua_store builds a result database with the tables kyua uses.
"""
from __future__ import annotations

import stat
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest
import sqlalchemy as sa

import matrixci as ci
from matrixci.model import StepResult
from matrixci.settings import Settings
from matrixci.step_workflows.kyua import suite_id

PLATFORM = "ubuntu-24.04"
COMPILER = "clang-18"

# (program, case, result, reason, stdout, stderr)
KyuaRow = Tuple[str, str, str, Optional[str], str, str]

PASSING_ROWS: List[KyuaRow] = [
    ("libpkg/pkg_test", "add", "passed", None, "", ""),
    ("libpkg/pkg_test", "remove", "passed", None, "", ""),
    ("libpkg/repo_test", "fetch", "skipped", "requires network", "", ""),
]

FAILING_ROWS: List[KyuaRow] = PASSING_ROWS + [
    ("libpkg/pkg_test", "upgrade", "failed", "exit code 1", "upgrading 3 packages\n", "assertion failed\n"),
    ("libpkg/repo_test", "sign", "broken", "premature exit", "", ""),
    ("tests/frontend/lock", "lock", "expected_failure", "known race", "", ""),
]


# ── kyua result store ────────────────────────────────────────────────

_SCHEMA = [
    "CREATE TABLE test_programs (test_program_id INTEGER PRIMARY KEY, relative_path TEXT NOT NULL)",
    "CREATE TABLE test_cases (test_case_id INTEGER PRIMARY KEY, test_program_id INTEGER, name TEXT NOT NULL)",
    "CREATE TABLE test_results (test_case_id INTEGER PRIMARY KEY, result_type TEXT NOT NULL,"
    " result_reason TEXT, start_time INTEGER NOT NULL, end_time INTEGER NOT NULL)",
    "CREATE TABLE files (file_id INTEGER PRIMARY KEY, contents BLOB NOT NULL)",
    "CREATE TABLE test_case_files (test_case_id INTEGER, file_name TEXT NOT NULL, file_id INTEGER)",
]


def write_kyua_store(path: Path, rows: Iterable[KyuaRow]) -> Path:
    """Create a kyua-shaped results database at `path`."""
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = sa.create_engine(f"sqlite:///{path}")
    programs: Dict[str, int] = {}
    file_id = 0
    with engine.begin() as conn:
        for ddl in _SCHEMA:
            conn.execute(sa.text(ddl))
        for case_id, (program, case, result, reason, stdout, stderr) in enumerate(rows, start=1):
            if program not in programs:
                programs[program] = len(programs) + 1
                conn.execute(
                    sa.text("INSERT INTO test_programs VALUES (:id, :path)"),
                    {"id": programs[program], "path": program},
                )
            conn.execute(
                sa.text("INSERT INTO test_cases VALUES (:id, :prog, :name)"),
                {"id": case_id, "prog": programs[program], "name": case},
            )
            start = 1_700_000_000_000_000 + case_id * 1_000_000
            conn.execute(
                sa.text("INSERT INTO test_results VALUES (:id, :type, :reason, :start, :end)"),
                {"id": case_id, "type": result, "reason": reason, "start": start, "end": start + 250_000},
            )
            for name, text in (("__STDOUT__", stdout), ("__STDERR__", stderr)):
                if not text:
                    continue
                file_id += 1
                conn.execute(
                    sa.text("INSERT INTO files VALUES (:id, :contents)"),
                    {"id": file_id, "contents": text.encode("utf-8")},
                )
                conn.execute(
                    sa.text("INSERT INTO test_case_files VALUES (:case, :name, :file)"),
                    {"case": case_id, "name": name, "file": file_id},
                )
    engine.dispose()
    return path


def store_path_for(kyua_home: Path, build_dir: Path, stamp: str = "20240101-000000-000000") -> Path:
    return kyua_home / "store" / f"results.{suite_id(build_dir)}.{stamp}.db"


# ── fake command runner ──────────────────────────────────────────────

def command_key(argv: List[str]) -> str:
    """Collapse an argv into the name tests use to script exit codes."""
    if argv and argv[0] == "sudo":
        argv = argv[1:]
    name = Path(argv[0]).name
    if name == "make":
        return f"make {argv[1]}" if len(argv) > 1 and argv[1] in ("check", "install") else "make"
    if name == "apt-get":
        return "apt-get install" if "install" in argv else "apt-get update"
    if name == "brew":
        return "brew install" if "install" in argv else "brew update"
    if name == "git":
        return "git clone" if "clone" in argv else "git checkout" if "checkout" in argv else "git fetch"
    return name


class FakeRunner:
    """
    Stand-in for run_command.

    `exit_codes` maps command_key() -> exit code (default 0). `make check`
    writes a kyua store built from `kyua_rows` and a kyua.log under
    $HOME/.kyua, as kyua does; `make install` populates the install prefix;
    configure leaves a config.log in the build dir.
    """

    def __init__(
        self,
        *,
        exit_codes: Optional[Dict[str, int]] = None,
        kyua_rows: Optional[List[KyuaRow]] = None,
    ):
        self.exit_codes = exit_codes or {}
        self.kyua_rows = PASSING_ROWS if kyua_rows is None else kyua_rows
        self.calls: List[Tuple[str, List[str], Path]] = []

    def keys(self) -> List[str]:
        return [k for k, _, _ in self.calls]

    def __call__(self, argv: List[str], *, cwd: Path, env: Dict[str, str], log: Path) -> int:
        key = command_key(argv)
        self.calls.append((key, list(argv), Path(cwd)))
        with log.open("a", encoding="utf-8") as f:
            f.write(f"$ {' '.join(argv)}\n")

        if key == "configure":
            (Path(cwd) / "config.log").write_text("configure: exit 0\n", encoding="utf-8")
        elif key == "make check":
            kyua_home = Path(env["HOME"]) / ".kyua"
            write_kyua_store(store_path_for(kyua_home, Path(cwd)), self.kyua_rows)
            logs = kyua_home / "logs"
            logs.mkdir(parents=True, exist_ok=True)
            (logs / "kyua.log").write_text(f"kyua: test run finished in {cwd}\n", encoding="utf-8")
        elif key == "make install":
            bindir = Path(env["INST_PKG"]) / "sbin"
            bindir.mkdir(parents=True, exist_ok=True)
            (bindir / "pkg").write_text("#!/bin/sh\n", encoding="utf-8")

        return self.exit_codes.get(key, 0)


# ── fixtures ─────────────────────────────────────────────────────────

def make_tool_dir(path: Path, tools=("clang", "clang++", "clang-cpp")) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    for tool in tools:
        exe = path / tool
        exe.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
        exe.chmod(exe.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def llvm_bindir(tmp_path) -> Path:
    return make_tool_dir(tmp_path / "llvm" / "bin")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        workspace=tmp_path / "work",
        artifacts=tmp_path / "artifacts",
        kyua_home=tmp_path / "kyua",
        provision=True,
        workers=2,
    )


@pytest.fixture
def pipeline(llvm_bindir):
    return ci.pipeline(
        "build",
        ci.matrix(
            platforms=[PLATFORM],
            instrumentation=[[], ["asan", "lsan"], ["ubsan", "tsan"]],
            include=[ci.compiler(COMPILER, PLATFORM, packages=["clang-18", "kyua"], bindir=str(llvm_bindir))],
        ),
        configure_args=["--with-libcurl"],
        repository="https://example.invalid/pkg.git",
        ref="main",
    )


@pytest.fixture
def cells(pipeline):
    return ci.expand_cells(pipeline.matrix, pipeline.project)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


def step_results(**codes: int) -> Tuple[StepResult, ...]:
    """step_results(build=0, test=1) -> recorded StepResults in that order."""
    t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
    out = []
    for i, (name, code) in enumerate(codes.items()):
        out.append(StepResult(name=name, exit_code=code, started_at=t0 + timedelta(seconds=i),
                              finished_at=t0 + timedelta(seconds=i + 1)))
    return tuple(out)
