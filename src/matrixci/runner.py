# runner.py
from __future__ import annotations

import os
import runpy
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from . import dsl
from .cell import CellExecutor
from .model import CellOutcome, CellResult, CellSpec, MatrixDimensions, Pipeline, PipelineOutcome
from .publish import ArtifactPublisher, PublishResult, artifact_names
from .settings import Settings
from .ui.console import get_console


# ----------------------------------------------------------------------
# Pipeline loading (local file)
# ----------------------------------------------------------------------

def load_pipeline(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    pl_path = Path(path).expanduser().resolve()
    if not pl_path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {pl_path}")
    if pl_path.suffix != ".py":
        raise ValueError(f"Pipeline must be a .py file, got: {pl_path.name}")

    module_name = f"matrixci_pipeline_{pl_path.stem}"
    globals_dict = runpy.run_path(str(pl_path), run_name=module_name)

    pipeline = None
    factory = globals_dict.get("pipeline")
    if "PIPELINE" in globals_dict:
        pipeline = globals_dict["PIPELINE"]
    elif callable(factory) and factory is not dsl.pipeline:
        # the imported dsl helper shares the name; only a user-defined one counts
        pipeline = factory()

    if not isinstance(pipeline, Pipeline):
        raise TypeError(
            "Pipeline file must return/define a Pipeline. "
            "Define pipeline() -> Pipeline or PIPELINE = Pipeline(...)."
        )
    return pipeline


# ----------------------------------------------------------------------
# Matrix expansion
# ----------------------------------------------------------------------

def expand_cells(dims: MatrixDimensions, project: str = "pkg") -> List[CellSpec]:
    """
    Expand declared (platform, compiler) pairs x instrumentation sets.

    Order: platforms as declared, then compilers as declared, then
    instrumentation sets as declared. Equal cells collapse into one.
    Raises ValueError on undeclared pairings or colliding artifact names.
    """
    platforms = {p.name: p for p in dims.platforms}
    if len(platforms) != len(dims.platforms):
        raise ValueError(f"Duplicate platform names: {[p.name for p in dims.platforms]}")

    for c in dims.compilers:
        if c.platform not in platforms:
            raise ValueError(
                f"Compiler '{c.name}' is paired with undeclared platform '{c.platform}'. "
                f"Known platforms: {sorted(platforms)}"
            )
    bare = sorted(n for n in platforms if not any(c.platform == n for c in dims.compilers))
    if bare:
        raise ValueError(f"Platforms without a compiler: {bare}")

    cells: List[CellSpec] = []
    seen = set()
    for p in dims.platforms:
        for c in dims.compilers:
            if c.platform != p.name:
                continue
            for flags in dims.instrumentation_sets:
                cell = CellSpec(platform=p, compiler=c, instrumentation=frozenset(flags))
                if cell in seen:
                    continue
                seen.add(cell)
                cells.append(cell)

    owners: Dict[str, CellSpec] = {}
    for cell in cells:
        for name in artifact_names(project, cell).all():
            other = owners.setdefault(name, cell)
            if other != cell:
                raise ValueError(f"Artifact name {name!r} shared by '{other.label}' and '{cell.label}'")
    return cells


def select_cells(cells: List[CellSpec], platforms: Optional[Iterable[str]] = None) -> List[CellSpec]:
    """Keep only cells for the given platform names (None keeps all)."""
    if not platforms:
        return list(cells)
    wanted = set(platforms)
    unknown = wanted - {c.platform.name for c in cells}
    if unknown:
        raise ValueError(f"Unknown platform(s): {sorted(unknown)}")
    return [c for c in cells if c.platform.name in wanted]


# ----------------------------------------------------------------------
# Orchestration
# ----------------------------------------------------------------------

class Executor(Protocol):
    def execute(self, cell: CellSpec) -> CellResult:
        ...


@dataclass
class PipelineResult:
    cells: List[CellResult] = field(default_factory=list)
    publications: Dict[CellSpec, PublishResult] = field(default_factory=dict)
    not_launched: List[CellSpec] = field(default_factory=list)
    cancelled: bool = False

    @property
    def outcome(self) -> PipelineOutcome:
        if self.cancelled or self.not_launched:
            return PipelineOutcome.FAILED
        if any(r.outcome is CellOutcome.FAILED for r in self.cells):
            return PipelineOutcome.FAILED
        return PipelineOutcome.SUCCESS

    @property
    def exit_code(self) -> int:
        return 0 if self.outcome is PipelineOutcome.SUCCESS else 1

    def statuses(self) -> Dict[str, str]:
        out = {r.cell.label: r.outcome.value for r in self.cells}
        for cell in self.not_launched:
            out[cell.label] = "not launched"
        return out


class MatrixOrchestrator:
    """
    Runs every cell to completion with no fail-fast, publishing each cell's
    artifacts as soon as it finishes.
    """

    def __init__(
        self,
        pipeline: Pipeline,
        settings: Settings,
        *,
        executor: Optional[Executor] = None,
        publisher: Optional[ArtifactPublisher] = None,
        cancel: Optional[threading.Event] = None,
        max_workers: Optional[int] = None,
    ):
        self.pipeline = pipeline
        self.settings = settings
        self.cancel = cancel or threading.Event()
        self.executor = executor or CellExecutor(pipeline, settings, cancel=self.cancel)
        self.publisher = publisher
        self.max_workers = max_workers or settings.workers

    def run(self, dims: Optional[MatrixDimensions] = None) -> PipelineResult:
        cells = expand_cells(dims or self.pipeline.matrix, self.pipeline.project)
        return self.run_cells(cells)

    def _execute(self, cell: CellSpec) -> CellResult:
        # cell boundary: nothing escaping a cell may take down its siblings
        try:
            return self.executor.execute(cell)
        except Exception as e:
            get_console().print_exception(e)
            return CellResult(cell=cell, error=f"{type(e).__name__}: {e}")

    def _publish(self, result: CellResult, pipeline_result: PipelineResult) -> None:
        if self.publisher is None:
            return
        console = get_console()
        pub = self.publisher.publish(result.cell, result.archives)
        pipeline_result.publications[result.cell] = pub
        if pub.ok:
            console.print_published(result.cell.label, pub.bundle, pub.uploaded)
        else:
            console.print_warning(f"[{result.cell.label}] publishing {pub.bundle} failed: {pub.error}")

    def run_cells(self, cells: List[CellSpec]) -> PipelineResult:
        max_workers = self.max_workers
        if max_workers is None:
            c = os.cpu_count() or 2
            max_workers = max(1, c - 1)

        ready: List[CellSpec] = list(reversed(cells))  # pop() from the end keeps declared order
        in_flight: Dict[Future, CellSpec] = {}
        finished: Dict[CellSpec, CellResult] = {}
        result = PipelineResult()

        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            while ready or in_flight:
                # launch up to max_workers cells; none once cancelled
                while ready and len(in_flight) < max_workers and not self.cancel.is_set():
                    cell = ready.pop()
                    in_flight[pool.submit(self._execute, cell)] = cell

                if not in_flight:
                    break

                fut = next(as_completed(list(in_flight.keys())))
                cell = in_flight.pop(fut)
                try:
                    cell_result = fut.result()
                except Exception as e:
                    cell_result = CellResult(cell=cell, error=f"{type(e).__name__}: {e}")
                finished[cell] = cell_result
                self._publish(cell_result, result)

        result.cells = [finished[c] for c in cells if c in finished]
        result.not_launched = [c for c in cells if c not in finished]
        # a signal after the last cell finished changes nothing
        result.cancelled = bool(result.not_launched) or any(r.interrupted for r in result.cells)
        return result
