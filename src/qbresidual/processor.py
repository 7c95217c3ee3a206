import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

import cv2
import numpy as np

from qbresidual.errors import (
    AllocationError,
    ConfigurationError,
    InferenceError,
    QBResidualError,
    UnsupportedFormatError,
)
from qbresidual.frame import Frame, count_planes
from qbresidual.models import BackendType, DataType, TensorDescriptor, resolve
from qbresidual.planes import NB_RESIDUAL_PLANES, PlaneBuffers

logger = logging.getLogger(__name__)

MODES = ("dnn", "random")
RESIDUAL_CHANNELS = 3
# random mode draws (int32)rand % RANDOM_MODULUS, i.e. values in [-29, 29]
RANDOM_MODULUS = 30


@dataclass
class ResidualOptions:
    backend: Union[str, int, BackendType] = "native"
    model: Optional[str] = None
    mode: str = "dnn"
    input_name: str = "x"
    output_name: str = "y"
    seed: int = 0
    device: str = "auto"
    provider: str = "auto"


def random_residual(prng, plane):
    """Fill the interior of ``plane.residual`` with bounded pseudorandom values.

    The 1-pixel border is left untouched.
    """
    interior = plane.residual[1:-1, 1:-1]
    if interior.size == 0:
        return
    draws = prng.integers(0, 2 ** 32, size=interior.shape, dtype=np.uint32)
    interior[...] = np.fmod(draws.view(np.int32), RANDOM_MODULUS)


class ResidualFilter:
    """
    Computes a per-plane residual for every frame with a DNN backend and
    merges it into the frame before passing it downstream.

    Lifecycle: __init__ loads the model, the first frame (or config_props)
    fixes tensor shape and residual buffers, close() releases both.
    """

    def __init__(self, options=None, sink: Optional[Callable[[Frame], None]] = None,
                 **kwargs):
        self.options = options if options is not None else ResidualOptions(**kwargs)
        self.sink = sink

        self.backend = None
        self.model = None
        self.planes = PlaneBuffers()
        self.input: Optional[TensorDescriptor] = None
        self.pix_fmt = None
        self.nb_planes = 0
        self.frame_count_out = 0
        self.inference_errors = 0
        self._samples = None
        self._scale = np.float32(1.0 / 255.0)

        opts = self.options
        self.prng = np.random.default_rng(opts.seed)

        if opts.mode not in MODES:
            raise ConfigurationError(f"mode must be one of {MODES}, got {opts.mode!r}")
        try:
            self.backend = resolve(opts.backend, device=opts.device, provider=opts.provider)
        except ConfigurationError:
            logger.error("could not create DNN module for requested backend %r", opts.backend)
            raise
        if not opts.model:
            logger.error("model file for network is not specified")
            raise ConfigurationError("model file for network is not specified")

        try:
            self.model = self.backend.load_model(opts.model)
        except QBResidualError:
            logger.error("could not load DNN model %r", opts.model)
            raise

    # -----------------------------------------------------------------------
    # Negotiation — once, from the first frame's geometry
    # -----------------------------------------------------------------------
    @property
    def configured(self):
        return self.input is not None

    def config_props(self, pix_fmt, width, height):
        if self.configured:
            if (pix_fmt, width, height) == (self.pix_fmt, self.input.width, self.input.height):
                return
            raise UnsupportedFormatError(
                f"stream changed from {self.pix_fmt} {self.input.width}x{self.input.height} "
                f"to {pix_fmt} {width}x{height}; re-negotiation is not supported"
            )
        if self.model is None:
            raise ConfigurationError("filter is closed")

        try:
            nb_planes = count_planes(pix_fmt)
            if nb_planes != NB_RESIDUAL_PLANES:
                raise UnsupportedFormatError(
                    f"Incorrect number of plane. It should be {NB_RESIDUAL_PLANES} "
                    f"but got {nb_planes}"
                )

            input = TensorDescriptor(DataType.FLOAT, width, height, RESIDUAL_CHANNELS)
            self.backend.set_input_output(
                self.model, input, self.options.input_name, [self.options.output_name]
            )

            self.planes.allocate(width, height)
            try:
                self._samples = np.empty((height, width, RESIDUAL_CHANNELS), dtype=np.float32)
            except MemoryError as exc:
                raise AllocationError(f"could not allocate {width}x{height} input tensor") from exc
        except QBResidualError as exc:
            logger.error("%s", exc)
            self.close()
            raise

        self.pix_fmt = pix_fmt
        self.nb_planes = nb_planes
        self.input = input
        logger.info("configured %s %dx%d, backend %s, mode %s",
                    pix_fmt, width, height, self.backend.name, self.options.mode)

    # -----------------------------------------------------------------------
    # Residual computation
    # -----------------------------------------------------------------------
    def preprocess(self, frame):
        """
        Pack the 3 planes into an (H, W, 3) float tensor in [0, 1].
        Subsampled planes are upscaled to the luma geometry.
        """
        h, w = self.input.height, self.input.width
        samples = self._samples
        for p in range(RESIDUAL_CHANNELS):
            plane = frame.planes[p]
            if plane.shape != (h, w):
                plane = cv2.resize(plane, (w, h), interpolation=cv2.INTER_LINEAR)
            samples[:, :, p] = plane
        np.multiply(samples, self._scale, out=samples)
        return samples

    def postprocess(self, output):
        """
        Quantise the (H, W, 3) model output into the int8 residual planes.
        """
        expected = (self.input.height, self.input.width, RESIDUAL_CHANNELS)
        if output.shape != expected:
            raise InferenceError(f"model output shape {output.shape} != {expected}")
        output = np.nan_to_num(output * 255.0)
        for p, plane in enumerate(self.planes):
            plane.residual[...] = np.clip(np.rint(output[:, :, p]), -128, 127)

    def compute_residual(self, frame):
        if self.options.mode == "random":
            for plane in self.planes:
                random_residual(self.prng, plane)
            return True

        try:
            output = self.backend.infer(self.model, self.preprocess(frame))
            self.postprocess(output)
        except InferenceError as exc:
            self.inference_errors += 1
            logger.warning("n:%4d pos:%9d inference failed, passing frame through: %s",
                           self.frame_count_out, frame.pkt_pos, exc)
            return False
        return True

    def merge(self, src, dst):
        """dst = clip(src + residual), residual resampled to each plane's size."""
        for p in range(RESIDUAL_CHANNELS):
            plane = src.planes[p]
            residual = self.planes[p].residual
            if residual.shape != plane.shape:
                rows, cols = plane.shape
                residual = np.rint(cv2.resize(residual.astype(np.float32), (cols, rows),
                                              interpolation=cv2.INTER_AREA))
            merged = plane.astype(np.int16) + residual.astype(np.int16)
            np.clip(merged, 0, 255, out=merged)
            dst.planes[p][...] = merged

    # -----------------------------------------------------------------------
    # Per-frame entry point
    # -----------------------------------------------------------------------
    def filter_frame(self, frame):
        self.config_props(frame.pix_fmt, frame.width, frame.height)

        if frame.is_writable():
            out = frame
        else:
            out = Frame.alloc(frame.pix_fmt, frame.width, frame.height)
            out.copy_props(frame)

        if self.compute_residual(frame):
            self.merge(frame, out)
        elif out is not frame:
            out.copy_from(frame)

        logger.info("n:%4d pos:%9d s:%dx%d",
                    self.frame_count_out, frame.pkt_pos, frame.width, frame.height)

        if out is not frame:
            frame.free()
        self.frame_count_out += 1
        if self.sink is not None:
            self.sink(out)
        return out

    # -----------------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------------
    def close(self):
        self.planes.release_all()
        self._samples = None
        self.input = None
        self.pix_fmt = None
        self.nb_planes = 0
        if self.backend is not None and self.model is not None:
            self.backend.free_model(self.model)
        self.model = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
