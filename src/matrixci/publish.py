# publish.py
from __future__ import annotations

import json
import shutil
import tarfile
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol
from urllib.parse import quote, urljoin

from .model import CellArchives, CellSpec

# ---------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------
# For project "pkg", platform "ubuntu-24.04", compiler "clang-18":
#   plain:      bundle  pkg-test-ubuntu-24.04-clang-18
#               install pkg-ubuntu-24.04-clang-18.tar
#               report  pkg-ubuntu-24.04-clang-18-report.tar
#   asan+lsan:  bundle  pkg-testasan_lsan-ubuntu-24.04-clang-18
#               install pkg-ubuntu-24.04-clang-18-asan_lsan.tar
#               report  pkg-ubuntu-24.04-clang-18-reportasan_lsan.tar
# Flag names never contain "_" and are joined in vocabulary order, so the
# suffix identifies the instrumentation set exactly.
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ArtifactNames:
    bundle: str
    install: str
    report: str

    def all(self) -> List[str]:
        return [self.bundle, self.install, self.report]


def flag_suffix(cell: CellSpec) -> str:
    return "_".join(f.value for f in cell.flags)


def artifact_names(project: str, cell: CellSpec) -> ArtifactNames:
    suffix = flag_suffix(cell)
    base = f"{project}-{cell.platform.name}-{cell.compiler.name}"
    return ArtifactNames(
        bundle=f"{project}-test{suffix}-{cell.platform.name}-{cell.compiler.name}",
        install=f"{base}-{suffix}.tar" if suffix else f"{base}.tar",
        report=f"{base}-report{suffix}.tar",
    )


# ---------------------------------------------------------------------
# Packaging
# ---------------------------------------------------------------------

def _iter_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    yield from sorted(root.rglob("*"))


def _tar_add_tree(tar: tarfile.TarFile, src: Path, arc_prefix: str = "") -> None:
    """Add the contents of `src` (not `src` itself) under arc_prefix."""
    for p in _iter_under(src):
        rel = p.relative_to(src).as_posix()
        arcname = f"{arc_prefix}/{rel}" if arc_prefix else rel
        tar.add(str(p), arcname=arcname, recursive=False)


def _write_tar(dest: Path, members: List[tuple[Path, str]]) -> Path:
    """Build an uncompressed tar in a tmp file, then rename into place."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_suffix(".tar.tmp")
    try:
        with tarfile.open(str(tmp), mode="w") as tar:
            for src, prefix in members:
                if src.is_dir():
                    _tar_add_tree(tar, src, prefix)
                elif src.is_file():
                    tar.add(str(src), arcname=prefix or src.name, recursive=False)
        tmp.replace(dest)
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)
    return dest


def package_cell(
    names: ArtifactNames,
    dist_dir: str | Path,
    *,
    install_tree: Optional[Path] = None,
    report_dir: Optional[Path] = None,
    step_logs: Optional[Path] = None,
    build_log: Optional[Path] = None,
) -> CellArchives:
    """
    Package whatever exists of a cell's outputs.

    Absent inputs are skipped, never an error: the report archive is always
    written (possibly holding only step logs), the install archive only when
    an install tree is given and exists.
    """
    dist = Path(dist_dir)

    install_tar = None
    if install_tree is not None and install_tree.is_dir():
        install_tar = _write_tar(dist / names.install, [(install_tree, "")])

    members: List[tuple[Path, str]] = []
    if report_dir is not None and report_dir.is_dir():
        members.append((report_dir, ""))
    if step_logs is not None and step_logs.is_dir():
        members.append((step_logs, "steps"))
    if build_log is not None and build_log.is_file():
        members.append((build_log, build_log.name))
    report_tar = _write_tar(dist / names.report, members)

    return CellArchives(install=install_tar, report=report_tar)


# ---------------------------------------------------------------------
# Artifact stores
# ---------------------------------------------------------------------

class ArtifactStore(Protocol):
    def put(self, bundle: str, archives: Dict[str, Path], retention_days: int) -> None:
        ...


class ArtifactStoreError(Exception):
    """Raised when an artifact store rejects or cannot receive a bundle."""
    pass


class DirectoryArtifactStore:
    """
    File-based store:
      root/
        <bundle>/
          <archive>.tar
          retention.json
    A bundle is replaced as a whole on every put (overwrite semantics).
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def put(self, bundle: str, archives: Dict[str, Path], retention_days: int) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        final = self.root / bundle
        tmp = self.root / f".{bundle}.tmp"
        if tmp.exists():
            shutil.rmtree(tmp)
        tmp.mkdir()
        try:
            for name, path in sorted(archives.items()):
                shutil.copyfile(path, tmp / name)
            meta = {
                "bundle": bundle,
                "archives": sorted(archives),
                "retention_days": retention_days,
                "expires_at_unix": int(time.time()) + retention_days * 86400,
            }
            (tmp / "retention.json").write_text(json.dumps(meta, indent=2, sort_keys=True), encoding="utf-8")
            if final.exists():
                shutil.rmtree(final)
            tmp.replace(final)
        except OSError as e:
            raise ArtifactStoreError(f"cannot store bundle {bundle!r} in {self.root}: {e}") from e
        finally:
            if tmp.exists():
                shutil.rmtree(tmp, ignore_errors=True)


class HttpArtifactStore:
    """PUTs each archive to <base>/artifacts/<bundle>/<archive>?retention_days=N."""

    def __init__(self, base_url: str, timeout: float = 60.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, bundle: str, name: str, retention_days: int) -> str:
        path = f"artifacts/{quote(bundle)}/{quote(name)}?retention_days={retention_days}"
        return urljoin(self.base_url + "/", path)

    def put(self, bundle: str, archives: Dict[str, Path], retention_days: int) -> None:
        for name, path in sorted(archives.items()):
            req = urllib.request.Request(
                self._url(bundle, name, retention_days),
                data=path.read_bytes(),
                headers={"Content-Type": "application/x-tar"},
                method="PUT",
            )
            try:
                with urllib.request.urlopen(req, timeout=self.timeout) as response:
                    response.read()
            except urllib.error.HTTPError as e:
                error_body = e.read().decode("utf-8", errors="replace") if e.fp else ""
                raise ArtifactStoreError(f"upload of {name} failed: {e.code} {e.reason}. {error_body}") from e
            except urllib.error.URLError as e:
                raise ArtifactStoreError(f"upload of {name} failed: {e.reason}") from e


# ---------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------

@dataclass
class PublishResult:
    bundle: str
    uploaded: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ArtifactPublisher:
    """Hands a cell's archives to the artifact store. Best-effort: never raises."""

    def __init__(self, store: ArtifactStore, *, project: str = "pkg", retention_days: int = 10):
        self.store = store
        self.project = project
        self.retention_days = retention_days

    def publish(self, cell: CellSpec, archives: CellArchives) -> PublishResult:
        names = artifact_names(self.project, cell)
        present: Dict[str, Path] = {}
        for path in (archives.install, archives.report):
            if path is not None and path.is_file():
                present[path.name] = path

        result = PublishResult(bundle=names.bundle)
        if not present:
            result.error = "nothing to publish"
            return result
        try:
            self.store.put(names.bundle, present, self.retention_days)
        except (ArtifactStoreError, OSError) as e:
            result.error = str(e)
            return result
        result.uploaded = sorted(present)
        return result
