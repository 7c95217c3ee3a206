"""Self-contained numpy backend.

The model file is a ``.npz`` archive describing a plain stack of 2-D
convolutions::

    layer0_kernel      (kh, kw, cin, cout) float32
    layer0_bias        (cout,)             float32
    layer0_activation  "relu" | "tanh" | "sigmoid" | "none"
    layer1_kernel      ...

Each convolution uses "same" padding with edge replication, so the output has
the input's spatial size.
"""

import logging
import os
from dataclasses import dataclass

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from qbresidual.errors import ModelLoadError, ShapeNegotiationError
from qbresidual.models.base_backend import BaseBackend, DataType, ModelHandle

logger = logging.getLogger(__name__)

ACTIVATIONS = {
    "relu": lambda x: np.maximum(x, 0.0, out=x),
    "tanh": lambda x: np.tanh(x, out=x),
    "sigmoid": lambda x: np.reciprocal(1.0 + np.exp(-x), out=x),
    "none": lambda x: x,
}


@dataclass
class ConvLayer:
    kernel: np.ndarray
    bias: np.ndarray
    activation: str = "none"

    @property
    def in_channels(self):
        return self.kernel.shape[2]

    @property
    def out_channels(self):
        return self.kernel.shape[3]


def save_native_model(path, layers):
    """Write ``layers`` (ConvLayer list) in the native ``.npz`` layout."""
    arrays = {}
    for i, layer in enumerate(layers):
        arrays[f"layer{i}_kernel"] = np.asarray(layer.kernel, dtype=np.float32)
        arrays[f"layer{i}_bias"] = np.asarray(layer.bias, dtype=np.float32)
        arrays[f"layer{i}_activation"] = np.array(layer.activation)
    with open(path, "wb") as fh:
        np.savez(fh, **arrays)


def load_native_layers(path):
    try:
        archive = np.load(path, allow_pickle=False)
    except (OSError, ValueError) as exc:
        raise ModelLoadError(f"cannot read native model {path!r}: {exc}") from exc
    if not hasattr(archive, "files"):
        raise ModelLoadError(f"{path!r} is a single array, not a native model archive")

    layers = []
    with archive:
        i = 0
        while f"layer{i}_kernel" in archive.files:
            try:
                kernel = archive[f"layer{i}_kernel"].astype(np.float32)
                bias = archive[f"layer{i}_bias"].astype(np.float32)
                activation = str(archive[f"layer{i}_activation"])
            except KeyError as exc:
                raise ModelLoadError(f"layer {i} is incomplete: missing {exc}") from None
            if kernel.ndim != 4:
                raise ModelLoadError(
                    f"layer {i}: kernel must be (kh, kw, cin, cout), got {kernel.shape}"
                )
            if bias.shape != (kernel.shape[3],):
                raise ModelLoadError(
                    f"layer {i}: bias shape {bias.shape} does not match "
                    f"{kernel.shape[3]} output channels"
                )
            if activation not in ACTIVATIONS:
                raise ModelLoadError(f"layer {i}: unknown activation {activation!r}")
            if layers and layers[-1].out_channels != kernel.shape[2]:
                raise ModelLoadError(
                    f"layer {i}: expects {kernel.shape[2]} input channels, "
                    f"previous layer produces {layers[-1].out_channels}"
                )
            layers.append(ConvLayer(kernel, bias, activation))
            i += 1

    if not layers:
        raise ModelLoadError(f"native model {path!r} has no layers")
    return layers


def conv2d_same(x, layer):
    """(H, W, cin) → (H, W, cout) convolution with edge-replicated padding."""
    kh, kw = layer.kernel.shape[:2]
    top, left = (kh - 1) // 2, (kw - 1) // 2
    padded = np.pad(
        x, ((top, kh - 1 - top), (left, kw - 1 - left), (0, 0)), mode="edge"
    )
    # (H, W, cin, kh, kw)
    windows = sliding_window_view(padded, (kh, kw), axis=(0, 1))
    out = np.einsum("hwcij,ijco->hwo", windows, layer.kernel, optimize=True)
    out += layer.bias
    return ACTIVATIONS[layer.activation](out.astype(np.float32, copy=False))


class NativeBackend(BaseBackend):
    """numpy convolution stack, no optional dependency."""

    name = "native"

    def load_model(self, path):
        if not path or not os.path.isfile(path):
            raise ModelLoadError(f"native model file not found: {path!r}")
        layers = load_native_layers(path)
        logger.info("native model loaded from %s (%d layers)", path, len(layers))
        return ModelHandle(backend=self.name, path=path, model=layers)

    def check_input_output(self, handle, input, input_name, output_names):
        layers = handle.model
        if input.dtype is not DataType.FLOAT:
            raise ShapeNegotiationError(
                f"native backend only runs float input, got {input.dtype.value}"
            )
        if input.channels != layers[0].in_channels:
            raise ShapeNegotiationError(
                f"model expects {layers[0].in_channels} input channels, "
                f"requested {input.channels}"
            )
        if layers[-1].out_channels != input.channels:
            raise ShapeNegotiationError(
                f"model produces {layers[-1].out_channels} channels, "
                f"{input.channels} needed"
            )
        if len(output_names) != 1:
            raise ShapeNegotiationError(
                f"native models have a single output, requested {output_names}"
            )

    def preprocess(self, handle, samples):
        expected = (handle.input.height, handle.input.width, handle.input.channels)
        if samples.shape != expected:
            raise ValueError(f"input shape {samples.shape} != negotiated {expected}")
        return samples.astype(np.float32, copy=False)

    def run(self, handle, tensor):
        x = tensor
        for layer in handle.model:
            x = conv2d_same(x, layer)
        return x

    def postprocess(self, handle, output):
        return output
