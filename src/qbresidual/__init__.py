"""DNN residual video filter."""

from qbresidual.errors import (
    AllocationError,
    ConfigurationError,
    InferenceError,
    ModelLoadError,
    QBResidualError,
    ShapeNegotiationError,
    UnsupportedFormatError,
)
from qbresidual.frame import Frame
from qbresidual.models import BackendType, available_backends, resolve
from qbresidual.processor import ResidualFilter, ResidualOptions

__version__ = "0.1.0"

__all__ = [
    "AllocationError",
    "BackendType",
    "ConfigurationError",
    "Frame",
    "InferenceError",
    "ModelLoadError",
    "QBResidualError",
    "ResidualFilter",
    "ResidualOptions",
    "ShapeNegotiationError",
    "UnsupportedFormatError",
    "available_backends",
    "resolve",
]
