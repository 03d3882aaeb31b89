# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Optional, Tuple


# ---------------------------------------------------------------------
# Matrix dimensions
# ---------------------------------------------------------------------

class Instrumentation(str, Enum):
    """Diagnostic build flags. Declaration order is the canonical order."""
    ASAN = "asan"
    LSAN = "lsan"
    UBSAN = "ubsan"
    TSAN = "tsan"
    MSAN = "msan"

    @property
    def configure_option(self) -> str:
        return f"--with-{self.value}"


_VOCABULARY = list(Instrumentation)


def ordered_flags(flags: Iterable[Instrumentation]) -> Tuple[Instrumentation, ...]:
    return tuple(sorted(set(flags), key=_VOCABULARY.index))


def parse_flags(names: Iterable[str | Instrumentation]) -> FrozenSet[Instrumentation]:
    out = set()
    for n in names:
        try:
            out.add(Instrumentation(n))
        except ValueError:
            known = ", ".join(f.value for f in _VOCABULARY)
            raise ValueError(f"Unknown instrumentation flag {n!r}. Known flags: {known}") from None
    return frozenset(out)


@dataclass(frozen=True)
class Platform:
    """A build host, e.g. ubuntu-24.04 (linux) or macos-15 (macos)."""
    name: str
    family: str = "linux"


@dataclass(frozen=True)
class Compiler:
    """
    A compiler selection, declared for exactly one platform.

    `bindir` pins where the tools live; when None they are looked up on PATH.
    `env` holds extra environment exported into every build step.
    """
    name: str
    platform: str
    packages: Tuple[str, ...] = ()
    bindir: Optional[str] = None
    cc: str = "clang"
    cxx: str = "clang++"
    cpp: str = "clang-cpp"
    env: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class CellSpec:
    """One concrete (platform, compiler, instrumentation set) combination."""
    platform: Platform
    compiler: Compiler
    instrumentation: FrozenSet[Instrumentation] = frozenset()

    @property
    def plain(self) -> bool:
        return not self.instrumentation

    @property
    def flags(self) -> Tuple[Instrumentation, ...]:
        return ordered_flags(self.instrumentation)

    @property
    def label(self) -> str:
        joined = "+".join(f.value for f in self.flags)
        parts = ["build", joined, self.platform.name, self.compiler.name]
        return " ".join(p for p in parts if p)


@dataclass(frozen=True)
class MatrixDimensions:
    """
    Declared dimensions. Platform/compiler pairing is explicit: each compiler
    names its platform, so expansion is pairs x instrumentation sets.
    """
    platforms: Tuple[Platform, ...]
    compilers: Tuple[Compiler, ...]
    instrumentation_sets: Tuple[FrozenSet[Instrumentation], ...] = (frozenset(),)


# ---------------------------------------------------------------------
# Pipeline declaration
# ---------------------------------------------------------------------

MANUAL = "workflow_dispatch"
PULL_REQUEST = "pull_request"
PUSH = "push"
EVENTS = (MANUAL, PULL_REQUEST, PUSH)


@dataclass(frozen=True)
class Trigger:
    event: str
    branches: Optional[Tuple[str, ...]] = None  # None -> any branch

    def matches(self, event: str, branch: str | None) -> bool:
        if event != self.event:
            return False
        if self.branches is None or branch is None:
            return True
        return branch in self.branches


@dataclass
class Pipeline:
    name: str
    matrix: MatrixDimensions
    project: str = "pkg"
    triggers: list[Trigger] = field(default_factory=lambda: [Trigger(MANUAL)])
    configure_args: list[str] = field(default_factory=list)
    configure_script: str = "configure"
    retention_days: int = 10
    repository: Optional[str] = None
    ref: Optional[str] = None

    def accepts(self, event: str, branch: str | None = None) -> bool:
        return any(t.matches(event, branch) for t in self.triggers)


# ---------------------------------------------------------------------
# Execution records
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepResult:
    name: str
    exit_code: int
    started_at: datetime
    finished_at: datetime

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


class CellOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


PipelineOutcome = CellOutcome


def cell_outcome(steps: Iterable[StepResult]) -> CellOutcome:
    """success iff the build and test steps were both recorded with exit 0."""
    by_name: Dict[str, StepResult] = {s.name: s for s in steps}
    build, test = by_name.get("build"), by_name.get("test")
    if build is not None and build.ok and test is not None and test.ok:
        return CellOutcome.SUCCESS
    return CellOutcome.FAILED


@dataclass(frozen=True)
class CellArchives:
    install: Optional[Path] = None
    report: Optional[Path] = None


@dataclass(frozen=True)
class CellResult:
    cell: CellSpec
    steps: Tuple[StepResult, ...] = ()
    archives: CellArchives = CellArchives()
    error: Optional[str] = None
    interrupted: bool = False  # cancellation skipped a step that would have run

    @property
    def outcome(self) -> CellOutcome:
        return cell_outcome(self.steps)

    def step(self, name: str) -> Optional[StepResult]:
        for s in self.steps:
            if s.name == name:
                return s
        return None
