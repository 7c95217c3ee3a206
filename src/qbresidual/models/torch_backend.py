import logging
import os

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from qbresidual.errors import ModelLoadError, ShapeNegotiationError
from qbresidual.models.base_backend import BaseBackend, DataType, ModelHandle

logger = logging.getLogger(__name__)

_ACTIVATIONS = {
    "relu": torch.relu,
    "tanh": torch.tanh,
    "sigmoid": torch.sigmoid,
    "none": lambda x: x,
}


class ConvStack(nn.Module):
    """torch twin of a native conv stack, NCHW in and out."""

    def __init__(self, layers):
        super().__init__()
        self.convs = nn.ModuleList()
        self.pads = []
        self.activations = []
        for layer in layers:
            kh, kw, cin, cout = layer.kernel.shape
            conv = nn.Conv2d(cin, cout, (kh, kw), bias=True)
            with torch.no_grad():
                conv.weight.copy_(torch.from_numpy(layer.kernel.transpose(3, 2, 0, 1).copy()))
                conv.bias.copy_(torch.from_numpy(layer.bias))
            self.convs.append(conv)
            top, left = (kh - 1) // 2, (kw - 1) // 2
            self.pads.append((left, kw - 1 - left, top, kh - 1 - top))
            self.activations.append(_ACTIVATIONS[layer.activation])

    def forward(self, x):
        for conv, pad, act in zip(self.convs, self.pads, self.activations):
            x = act(conv(F.pad(x, pad, mode="replicate")))
        return x


def export_torchscript(layers, path, height=64, width=64):
    """Trace a ConvStack built from native ``layers`` and save it to ``path``."""
    cin = layers[0].kernel.shape[2]
    module = ConvStack(layers).eval()
    with torch.no_grad():
        traced = torch.jit.trace(module, torch.rand(1, cin, height, width))
    traced.save(path)
    return traced


class TorchBackend(BaseBackend):
    """TorchScript backend.

    The scripted module takes a (1, C, H, W) float tensor in [0, 1] and returns
    a tensor of the same shape (or a tuple whose first item is one).
    """

    name = "torch"

    def __init__(self, device="auto"):
        self.device = self._resolve_device(device)
        self._use_cuda = self.device.type == "cuda"

    def _resolve_device(self, device):
        mode = device.lower()
        if mode == "auto":
            if torch.cuda.is_available():
                return torch.device("cuda:0")
            return torch.device("cpu")
        if mode == "cuda":
            if not torch.cuda.is_available():
                raise ModelLoadError("CUDA/ROCm device not available for PyTorch.")
            return torch.device("cuda:0")
        if mode == "cpu":
            return torch.device("cpu")
        raise ModelLoadError("device must be one of: auto, cuda, cpu")

    def load_model(self, path):
        if not path or not os.path.isfile(path):
            raise ModelLoadError(f"TorchScript model file not found: {path!r}")
        try:
            model = torch.jit.load(path, map_location=self.device)
        except (RuntimeError, ValueError) as exc:
            raise ModelLoadError(f"torch could not load {path!r}: {exc}") from exc
        model.eval()
        logger.info("TorchScript model loaded from %s on %s", path, self.device)
        return ModelHandle(backend=self.name, path=path, model=model)

    def check_input_output(self, handle, input, input_name, output_names):
        if input.dtype is not DataType.FLOAT:
            raise ShapeNegotiationError(
                f"torch backend only runs float input, got {input.dtype.value}"
            )
        if input.channels != 3:
            raise ShapeNegotiationError(
                f"torch backend expects 3 channels, requested {input.channels}"
            )
        if len(output_names) != 1:
            raise ShapeNegotiationError(
                f"TorchScript modules return one output here, requested {output_names}"
            )

    @torch.inference_mode()
    def preprocess(self, handle, samples):
        # (H, W, C) → (1, C, H, W)
        tensor = torch.from_numpy(np.ascontiguousarray(samples, dtype=np.float32))
        tensor = tensor.permute(2, 0, 1).unsqueeze(0)
        return tensor.to(device=self.device, non_blocking=self._use_cuda)

    @torch.inference_mode()
    def run(self, handle, tensor):
        return handle.model(tensor)

    @torch.inference_mode()
    def postprocess(self, handle, output):
        if isinstance(output, (tuple, list)):
            output = output[0]
        t = output.squeeze(0).permute(1, 2, 0).float()
        return t.cpu().numpy()

    def release(self, handle):
        if self._use_cuda:
            torch.cuda.empty_cache()
