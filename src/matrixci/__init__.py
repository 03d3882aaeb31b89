from .dsl import platform, compiler, sanitize, matrix, trigger, pipeline
from .runner import MatrixOrchestrator, expand_cells, load_pipeline
from .model import CellSpec, Instrumentation, Pipeline

__all__ = [
    "platform", "compiler", "sanitize", "matrix", "trigger", "pipeline",
    "MatrixOrchestrator", "expand_cells", "load_pipeline",
    "CellSpec", "Instrumentation", "Pipeline",
]
