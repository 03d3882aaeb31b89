# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - step logs that explain a fatal cell failure after the fact
    """
    kind: str
    cell: str
    step: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}", f"cell={self.cell}"]
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class UnresolvedToolchain(CIError):
    """A required tool could not be located for a (platform, compiler) pair."""

    @classmethod
    def missing(cls, cell: str, role: str, tool: str, searched: list[str]) -> "UnresolvedToolchain":
        return cls(
            kind="unresolved_toolchain",
            cell=cell,
            step="environment",
            message=f"cannot locate {role} tool {tool!r}",
            details={"role": role, "tool": tool, "searched": ":".join(searched) or "<PATH>"},
        )


TOOL_HINTS = {
    "git": "Install Git or fix PATH.",
    "make": "Install make (e.g., build-essential on Debian/Ubuntu).",
    "kyua": "Install kyua (and atf) so the test harness can run.",
    "apt-get": "Provisioning with apt-get requires a Debian/Ubuntu host.",
    "brew": "Install Homebrew or disable provisioning (--no-provision).",
    "sudo": "Run as root or install sudo for package provisioning.",
}
