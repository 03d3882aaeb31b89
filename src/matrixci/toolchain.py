# toolchain.py
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .errors import UnresolvedToolchain
from .model import CellSpec, Compiler, Platform

SRC_DIR = "src.pkg"
BUILD_DIR = "build.pkg"
INST_DIR = "inst.pkg"


@dataclass(frozen=True)
class ToolchainEnvironment:
    """
    Resolved tools + workspace paths for one cell.

    tools maps logical role -> value:
      compiler, cxx, preprocessor, build_compiler, parallelism
    """
    tools: Dict[str, str]
    source: Path
    build: Path
    install: Path
    extra_env: Dict[str, str] = field(default_factory=dict)

    @property
    def parallelism(self) -> int:
        return int(self.tools["parallelism"])

    def as_env(self) -> Dict[str, str]:
        env = {
            "CC": self.tools["compiler"],
            "CXX": self.tools["cxx"],
            "CPP": self.tools["preprocessor"],
            # automake does not default CC_FOR_BUILD to CC
            "CC_FOR_BUILD": self.tools["build_compiler"],
            "NPROC": self.tools["parallelism"],
            "SRC_PKG": str(self.source),
            "BUILD_PKG": str(self.build),
            "INST_PKG": str(self.install),
        }
        env.update(self.extra_env)
        return env


def _parallelism() -> int:
    return os.cpu_count() or 1


def _locate(tool: str, bindir: Optional[str]) -> Optional[str]:
    if bindir:
        candidate = Path(bindir) / tool
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        return None
    return shutil.which(tool)


def resolve(platform: Platform, compiler: Compiler, cell_root: str | Path, *, label: str = "") -> ToolchainEnvironment:
    """
    Resolve concrete tool paths for (platform, compiler).

    Only probes the filesystem; raises UnresolvedToolchain naming the
    missing tool and where it was looked for.
    """
    if compiler.platform != platform.name:
        raise ValueError(
            f"Compiler '{compiler.name}' is declared for '{compiler.platform}', not '{platform.name}'"
        )

    root = Path(cell_root).resolve()
    searched: List[str] = [compiler.bindir] if compiler.bindir else []
    label = label or f"{platform.name} {compiler.name}"

    resolved: Dict[str, str] = {}
    for role, tool in (("compiler", compiler.cc), ("cxx", compiler.cxx), ("preprocessor", compiler.cpp)):
        path = _locate(tool, compiler.bindir)
        if path is None:
            raise UnresolvedToolchain.missing(label, role, tool, searched)
        resolved[role] = path

    resolved["build_compiler"] = resolved["compiler"]
    resolved["parallelism"] = str(_parallelism())

    return ToolchainEnvironment(
        tools=resolved,
        source=root / SRC_DIR,
        build=root / BUILD_DIR,
        install=root / INST_DIR,
        extra_env=dict(compiler.env),
    )


def resolve_cell(cell: CellSpec, cell_root: str | Path) -> ToolchainEnvironment:
    return resolve(cell.platform, cell.compiler, cell_root, label=cell.label)
