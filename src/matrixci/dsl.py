# src/matrixci/dsl.py
from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from .model import (
    EVENTS,
    Compiler,
    Instrumentation,
    MatrixDimensions,
    Pipeline,
    Platform,
    Trigger,
    parse_flags,
)


# ---------------------------------------------------------------------
# Dimension helpers
# ---------------------------------------------------------------------

def platform(name: str, family: str | None = None) -> Platform:
    """Declare a build host. Family defaults from the name (macos-* -> macos)."""
    if family is None:
        family = "macos" if name.startswith("macos") else "linux"
    return Platform(name=name, family=family)


def compiler(
    name: str,
    platform: str,
    *,
    packages: Optional[Sequence[str]] = None,
    bindir: str | None = None,
    cc: str = "clang",
    cxx: str = "clang++",
    cpp: str = "clang-cpp",
    env: Optional[Dict[str, str]] = None,
) -> Compiler:
    """Declare a compiler for one platform, with the packages it needs."""
    return Compiler(
        name=name,
        platform=platform,
        packages=tuple(packages or ()),
        bindir=bindir,
        cc=cc,
        cxx=cxx,
        cpp=cpp,
        env=tuple(sorted((env or {}).items())),
    )


def sanitize(*flags: str | Instrumentation) -> FrozenSet[Instrumentation]:
    """sanitize() is the plain cell; sanitize("asan", "lsan") an instrumented one."""
    return parse_flags(flags)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    *,
    platforms: Iterable[str | Platform],
    include: Iterable[Compiler],
    instrumentation: Optional[Iterable[Iterable[str | Instrumentation]]] = None,
) -> MatrixDimensions:
    """
    Declare the matrix.

    Example:
        matrix(
            platforms=["ubuntu-24.04"],
            instrumentation=[[], ["asan", "lsan"], ["ubsan", "tsan"]],
            include=[compiler("clang-18", "ubuntu-24.04", bindir="/usr/lib/llvm-18/bin")],
        )
    """
    plats = tuple(p if isinstance(p, Platform) else platform(p) for p in platforms)
    compilers = tuple(include)
    if not plats:
        raise ValueError("matrix() needs at least one platform")

    names = {p.name for p in plats}
    for c in compilers:
        if c.platform not in names:
            raise ValueError(f"compiler({c.name!r}) targets undeclared platform {c.platform!r}")
    for p in plats:
        if not any(c.platform == p.name for c in compilers):
            raise ValueError(f"platform {p.name!r} has no compiler in include=")

    declared = [[]] if instrumentation is None else list(instrumentation)
    if not declared:
        raise ValueError("matrix() needs at least one instrumentation set; use [[]] for a plain build")

    sets: List[FrozenSet[Instrumentation]] = []
    for flags in declared:
        fs = parse_flags(flags)
        if fs not in sets:
            sets.append(fs)

    return MatrixDimensions(platforms=plats, compilers=compilers, instrumentation_sets=tuple(sets))


# ---------------------------------------------------------------------
# Triggers + pipeline
# ---------------------------------------------------------------------

def trigger(event: str, branches: Optional[Sequence[str]] = None) -> Trigger:
    if event not in EVENTS:
        raise ValueError(f"Unknown trigger event {event!r}. Known events: {list(EVENTS)}")
    return Trigger(event=event, branches=tuple(branches) if branches is not None else None)


def pipeline(
    name: str,
    dims: MatrixDimensions,
    *,
    project: str = "pkg",
    triggers: Optional[List[Trigger]] = None,
    configure_args: Optional[List[str]] = None,
    configure_script: str = "configure",
    retention_days: int = 10,
    repository: str | None = None,
    ref: str | None = None,
) -> Pipeline:
    """Pipeline definition helper for pipeline files."""
    return Pipeline(
        name=name,
        matrix=dims,
        project=project,
        triggers=list(triggers) if triggers is not None else [trigger("workflow_dispatch")],
        configure_args=list(configure_args or []),
        configure_script=configure_script,
        retention_days=retention_days,
        repository=repository,
        ref=ref,
    )
