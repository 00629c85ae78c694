"""
Error types raised by the modeling pipeline.

Everything derives from ``ValueError`` so callers that only catch
``ValueError`` keep working.
"""

from typing import Any, Dict, Iterable, Optional


class PipelineError(ValueError):
    """Base class for pipeline errors."""


class SchemaError(PipelineError):
    """Required column missing or of the wrong type."""

    def __init__(self, message: str, columns: Optional[Iterable[str]] = None):
        self.columns = list(columns or [])
        super().__init__(message)


class PartitionError(PipelineError):
    """A split or resampling request yields an empty partition or fold."""

    def __init__(self, message: str, **params: Any):
        self.params: Dict[str, Any] = params
        if params:
            details = ", ".join(f"{k}={v!r}" for k, v in params.items())
            message = f"{message} ({details})"
        super().__init__(message)


class GridError(PipelineError):
    """A grid value falls outside its parameter's domain."""


class UnresolvedParameterError(GridError):
    """A data-dependent parameter range was used before being finalized."""


class LeakageError(PipelineError):
    """The held-out partition was requested before the final evaluation."""


class SelectionError(PipelineError):
    """No configuration has a single successfully scored fold."""


class DuplicateKeyError(PipelineError):
    """A join key is duplicated and no authoritative source was named."""
