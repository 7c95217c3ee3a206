import logging
from dataclasses import dataclass
from typing import List

import numpy as np

from qbresidual.errors import AllocationError

logger = logging.getLogger(__name__)

NB_RESIDUAL_PLANES = 3


@dataclass
class PlaneInfo:
    width: int
    height: int
    residual: np.ndarray  # (height, width) int8


class PlaneBuffers:
    """Owns the per-plane residual buffers.

    Buffers are allocated once at the negotiated geometry and never resized.
    """

    def __init__(self):
        self.planes: List[PlaneInfo] = []

    def __len__(self):
        return len(self.planes)

    def __getitem__(self, index):
        return self.planes[index]

    def __iter__(self):
        return iter(self.planes)

    @property
    def allocated(self):
        return len(self.planes)

    def allocate(self, width, height):
        if self.planes:
            raise AllocationError(
                f"{len(self.planes)} residual planes already allocated; "
                "buffers are never resized"
            )
        if width <= 0 or height <= 0:
            raise AllocationError(f"invalid residual geometry {width}x{height}")

        planes = []
        for p in range(NB_RESIDUAL_PLANES):
            try:
                residual = np.zeros((height, width), dtype=np.int8)
            except (MemoryError, ValueError) as exc:
                planes.clear()
                raise AllocationError(
                    f"could not allocate residual plane {p} ({width}x{height})"
                ) from exc
            planes.append(PlaneInfo(width, height, residual))

        self.planes = planes
        logger.debug("allocated %d residual planes of %dx%d", len(planes), width, height)
        return self.planes

    def release_all(self):
        self.planes = []
