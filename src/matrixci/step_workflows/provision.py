# step_workflows/provision.py
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from typing import List

from ..model import Compiler, Platform


@dataclass(frozen=True)
class ProvisionCommand:
    argv: List[str]
    tolerate_failure: bool = False  # e.g. an index refresh that may be flaky


def _privileged(argv: List[str]) -> List[str]:
    if hasattr(os, "geteuid") and os.geteuid() != 0 and shutil.which("sudo"):
        return ["sudo", *argv]
    return argv


# ---------------------------------------------------------------------
# Package manager per platform family
# ---------------------------------------------------------------------

def apt_commands(packages: List[str]) -> List[ProvisionCommand]:
    return [
        ProvisionCommand(_privileged(["apt-get", "update", "--quiet"]), tolerate_failure=True),
        ProvisionCommand(
            _privileged([
                "apt-get", "-yq", "--no-install-suggests", "--no-install-recommends",
                "install", *packages,
            ])
        ),
    ]


def brew_commands(packages: List[str]) -> List[ProvisionCommand]:
    # system clang on macOS lacks sanitizers, so the compiler comes from brew too
    return [
        ProvisionCommand(["brew", "update", "--quiet"], tolerate_failure=True),
        ProvisionCommand(["brew", "install", *packages]),
    ]


def provision_commands(platform: Platform, compiler: Compiler) -> List[ProvisionCommand]:
    """Commands that install the compiler's declared packages on `platform`."""
    packages = list(compiler.packages)
    if not packages:
        return []
    if platform.family == "macos":
        return brew_commands(packages)
    if platform.family == "linux":
        return apt_commands(packages)
    raise ValueError(f"No package provisioning known for platform family {platform.family!r}")
