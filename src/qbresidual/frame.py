"""Planar video frames with an explicit ownership tag.

A ``Frame`` holds one 2-D ``uint8`` array per plane. ``exclusive`` says whether
this reference is the only one to the pixel storage: the filter mutates a frame
in place only when it is exclusive, and otherwise works on a fresh copy.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from qbresidual.errors import UnsupportedFormatError


@dataclass(frozen=True)
class PixelFormat:
    name: str
    log2_chroma_w: int
    log2_chroma_h: int
    # components packed per plane; len() is the plane count
    plane_components: Tuple[int, ...]
    # planes that are chroma-subsampled
    chroma_planes: Tuple[int, ...] = ()

    @property
    def nb_planes(self) -> int:
        return len(self.plane_components)


PIXEL_FORMATS = {
    "yuv420p": PixelFormat("yuv420p", 1, 1, (1, 1, 1), (1, 2)),
    "yuv422p": PixelFormat("yuv422p", 1, 0, (1, 1, 1), (1, 2)),
    "yuv444p": PixelFormat("yuv444p", 0, 0, (1, 1, 1), (1, 2)),
    "gbrp": PixelFormat("gbrp", 0, 0, (1, 1, 1)),
    "gray": PixelFormat("gray", 0, 0, (1,)),
    "nv12": PixelFormat("nv12", 1, 1, (1, 2), (1,)),
    "yuva420p": PixelFormat("yuva420p", 1, 1, (1, 1, 1, 1), (1, 2)),
    "gbrap": PixelFormat("gbrap", 0, 0, (1, 1, 1, 1)),
}


def get_pix_fmt(name: str) -> PixelFormat:
    try:
        return PIXEL_FORMATS[name]
    except KeyError:
        raise UnsupportedFormatError(f"Unknown pixel format: {name!r}") from None


def count_planes(name: str) -> int:
    return get_pix_fmt(name).nb_planes


def _ceil_rshift(value: int, shift: int) -> int:
    return -((-value) >> shift)


def plane_shape(name: str, width: int, height: int, plane: int) -> Tuple[int, int]:
    """(rows, cols) of ``plane`` for a ``width`` x ``height`` picture."""
    fmt = get_pix_fmt(name)
    components = fmt.plane_components[plane]
    if plane in fmt.chroma_planes:
        return (_ceil_rshift(height, fmt.log2_chroma_h),
                _ceil_rshift(width, fmt.log2_chroma_w) * components)
    return height, width * components


class Frame:
    def __init__(self, planes, pix_fmt, width, height, pts=None, pkt_pos=-1,
                 duration=0, time_base=None, exclusive=True):
        self.planes: Optional[List[np.ndarray]] = planes
        self.pix_fmt = pix_fmt
        self.width = width
        self.height = height
        self.pts = pts
        self.pkt_pos = pkt_pos
        self.duration = duration
        self.time_base = time_base
        self.exclusive = exclusive

    @classmethod
    def alloc(cls, pix_fmt, width, height, **props):
        planes = [
            np.zeros(plane_shape(pix_fmt, width, height, p), dtype=np.uint8)
            for p in range(count_planes(pix_fmt))
        ]
        return cls(planes, pix_fmt, width, height, **props)

    @property
    def nb_planes(self):
        return count_planes(self.pix_fmt)

    @property
    def freed(self):
        return self.planes is None

    def is_writable(self):
        return self.exclusive and not self.freed

    def ref(self):
        """Return a second reference to the same pixel storage.

        Neither reference is exclusive afterwards.
        """
        self.exclusive = False
        other = Frame(self.planes, self.pix_fmt, self.width, self.height,
                      exclusive=False)
        other.copy_props(self)
        return other

    def copy_props(self, src):
        self.pts = src.pts
        self.pkt_pos = src.pkt_pos
        self.duration = src.duration
        self.time_base = src.time_base

    def copy_from(self, src):
        for dst_plane, src_plane in zip(self.planes, src.planes):
            np.copyto(dst_plane, src_plane)

    def free(self):
        self.planes = None
        self.exclusive = False

    def __repr__(self):
        return (f"Frame({self.pix_fmt} {self.width}x{self.height} "
                f"pts={self.pts} pos={self.pkt_pos} "
                f"{'exclusive' if self.exclusive else 'shared'})")


# ---------------------------------------------------------------------------
# OpenCV interop
# ---------------------------------------------------------------------------
def planes_from_bgr(image, pix_fmt="yuv420p"):
    """Split a BGR uint8 image (H, W, 3) into the planes of ``pix_fmt``."""
    h, w = image.shape[:2]
    if pix_fmt == "yuv420p":
        if h % 2 or w % 2:
            raise UnsupportedFormatError(
                f"yuv420p needs even dimensions, got {w}x{h}"
            )
        i420 = cv2.cvtColor(image, cv2.COLOR_BGR2YUV_I420).ravel()
        luma = h * w
        chroma = luma // 4
        return [
            i420[:luma].reshape(h, w).copy(),
            i420[luma:luma + chroma].reshape(h // 2, w // 2).copy(),
            i420[luma + chroma:].reshape(h // 2, w // 2).copy(),
        ]
    if pix_fmt == "yuv444p":
        yuv = cv2.cvtColor(image, cv2.COLOR_BGR2YUV)
        return [np.ascontiguousarray(c) for c in cv2.split(yuv)]
    if pix_fmt == "gbrp":
        b, g, r = cv2.split(image)
        return [g, b, r]
    raise UnsupportedFormatError(f"No BGR conversion for {pix_fmt!r}")


def planes_to_bgr(frame):
    """Inverse of :func:`planes_from_bgr` for a frame's planes."""
    h, w = frame.height, frame.width
    if frame.pix_fmt == "yuv420p":
        i420 = np.concatenate([p.ravel() for p in frame.planes])
        return cv2.cvtColor(i420.reshape(h * 3 // 2, w), cv2.COLOR_YUV2BGR_I420)
    if frame.pix_fmt == "yuv444p":
        return cv2.cvtColor(cv2.merge(frame.planes), cv2.COLOR_YUV2BGR)
    if frame.pix_fmt == "gbrp":
        g, b, r = frame.planes
        return cv2.merge([b, g, r])
    raise UnsupportedFormatError(f"No BGR conversion for {frame.pix_fmt!r}")
