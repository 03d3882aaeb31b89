# step_workflows/autotools.py
from __future__ import annotations

from typing import List, Sequence

from ..model import CellSpec
from ..toolchain import ToolchainEnvironment


def configure_command(
    cell: CellSpec,
    tc: ToolchainEnvironment,
    *,
    configure_args: Sequence[str] = (),
    script: str = "configure",
) -> List[str]:
    """<src>/configure --prefix=<inst> <configure_args> --with-<flag>..."""
    cmd = [str(tc.source / script), f"--prefix={tc.install}"]
    cmd.extend(configure_args)
    # one option per active instrumentation flag
    cmd.extend(flag.configure_option for flag in cell.flags)
    return cmd


def build_command(tc: ToolchainEnvironment) -> List[str]:
    return ["make", f"-j{tc.parallelism}"]


def check_command() -> List[str]:
    return ["make", "check"]


def install_command() -> List[str]:
    return ["make", "install"]
