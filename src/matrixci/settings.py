from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_WORKSPACE = ".matrixci/work"
DEFAULT_ARTIFACTS = ".matrixci/artifacts"
DEFAULT_KYUA_HOME = "~/.kyua"


@dataclass(frozen=True)
class Settings:
    workspace: Path = Path(DEFAULT_WORKSPACE)
    artifacts: Path = Path(DEFAULT_ARTIFACTS)
    artifact_url: Optional[str] = None
    kyua_home: Path = Path(DEFAULT_KYUA_HOME).expanduser()
    provision: bool = True
    workers: Optional[int] = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        workers = env.get("MATRIXCI_WORKERS")
        return cls(
            workspace=Path(env.get("MATRIXCI_WORKSPACE", DEFAULT_WORKSPACE)),
            artifacts=Path(env.get("MATRIXCI_ARTIFACTS", DEFAULT_ARTIFACTS)),
            artifact_url=env.get("MATRIXCI_ARTIFACT_URL") or None,
            kyua_home=Path(env.get("MATRIXCI_KYUA_HOME", DEFAULT_KYUA_HOME)).expanduser(),
            provision=env.get("MATRIXCI_PROVISION", "1") != "0",
            workers=int(workers) if workers else None,
        )

    def override(self, **changes) -> "Settings":
        """Apply CLI overrides, ignoring options left unset (None)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
