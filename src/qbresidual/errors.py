class QBResidualError(Exception):
    """Base class for every error raised by the residual filter."""


class ConfigurationError(QBResidualError):
    """Missing/invalid option or unresolvable backend identifier."""


class ModelLoadError(QBResidualError):
    """The backend could not instantiate the model."""


class ShapeNegotiationError(QBResidualError):
    """The backend rejected the requested input/output description."""


class UnsupportedFormatError(QBResidualError):
    """Pixel format or stream geometry the filter cannot handle."""


class AllocationError(QBResidualError):
    """Residual plane buffers could not be allocated."""


class InferenceError(QBResidualError):
    """The backend failed on a single frame. Recoverable."""
