"""Backend registry.

Backends that need an optional library are only resolvable when that
library can be imported.
"""

import enum
import importlib.util

from qbresidual.errors import ConfigurationError
from qbresidual.models.base_backend import BaseBackend, DataType, ModelHandle, TensorDescriptor


class BackendType(enum.IntEnum):
    NATIVE = 0
    ONNX = 1
    TORCH = 2


def _native(**options):
    from qbresidual.models.native import NativeBackend
    return NativeBackend()


def _onnx(provider="auto", **options):
    from qbresidual.models.onnx_backend import OnnxBackend
    return OnnxBackend(provider=provider)


def _torch(device="auto", **options):
    from qbresidual.models.torch_backend import TorchBackend
    return TorchBackend(device=device)


# identifier -> (factory, module the backend needs or None)
_REGISTRY = {
    BackendType.NATIVE: (_native, None),
    BackendType.ONNX: (_onnx, "onnxruntime"),
    BackendType.TORCH: (_torch, "torch"),
}


def register_backend(identifier, factory, requires=None):
    _REGISTRY[identifier] = (factory, requires)


def _lookup_key(identifier):
    if isinstance(identifier, str):
        name = identifier.strip().lower()
        for key in _REGISTRY:
            key_name = key.name.lower() if isinstance(key, enum.Enum) else str(key).lower()
            if key_name == name:
                return key
        if name.isdigit():
            identifier = int(name)
    if isinstance(identifier, int) and not isinstance(identifier, BackendType):
        try:
            identifier = BackendType(identifier)
        except ValueError:
            pass
    if identifier in _REGISTRY:
        return identifier
    raise ConfigurationError(
        f"unknown DNN backend {identifier!r}; available: {available_backends()}"
    )


def _is_available(requires):
    return requires is None or importlib.util.find_spec(requires) is not None


def available_backends():
    return [
        key.name.lower() if isinstance(key, enum.Enum) else str(key)
        for key, (_, requires) in _REGISTRY.items()
        if _is_available(requires)
    ]


def resolve(identifier, **options):
    """Build the backend for ``identifier`` (enum, int value or name)."""
    key = _lookup_key(identifier)
    factory, requires = _REGISTRY[key]
    if not _is_available(requires):
        raise ConfigurationError(
            f"DNN backend {identifier!r} needs the optional dependency {requires!r}, "
            "which is not installed"
        )
    return factory(**options)


__all__ = [
    "BackendType",
    "BaseBackend",
    "DataType",
    "ModelHandle",
    "TensorDescriptor",
    "available_backends",
    "register_backend",
    "resolve",
]
