"""scguide: guided clustering pipeline for single-cell RNA-seq count matrices."""

__version__ = "0.3.0"

from .errors import (
    ScguideError,
    InputError,
    ConfigError,
    DegenerateResultError,
    NumericInstabilityWarning,
)
from .config import PipelineConfig
from .matrix import ExpressionMatrix
from .pipeline import run_pipeline, PipelineResult

__all__ = [
    "__version__",
    "ScguideError",
    "InputError",
    "ConfigError",
    "DegenerateResultError",
    "NumericInstabilityWarning",
    "ExpressionMatrix",
    "PipelineConfig",
    "run_pipeline",
    "PipelineResult",
]
