import queue
import threading

import cv2

from qbresidual.errors import ConfigurationError
from qbresidual.frame import Frame, planes_from_bgr


class VideoSource:
    """Decodes a video with OpenCV and hands out planar Frames.

    With ``prefetch > 0`` decoding and plane conversion run on a reader
    thread, ``prefetch`` frames ahead.
    """

    def __init__(self, path, pix_fmt="yuv420p", prefetch=0):
        self.cap = cv2.VideoCapture(path)
        if not self.cap.isOpened():
            raise ConfigurationError(f"Cannot open video {path!r}")
        # Reduce decoder queueing latency when backend supports it.
        self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self.pix_fmt = pix_fmt
        self.fps = self.cap.get(cv2.CAP_PROP_FPS) or 25.0
        self.prefetch = max(0, int(prefetch))
        self._index = 0
        self._queue = None
        self._thread = None
        self._stopped = False
        self._sentinel = object()

        if self.prefetch > 0:
            self._queue = queue.Queue(maxsize=self.prefetch)
            self._thread = threading.Thread(target=self._reader_loop, daemon=True)
            self._thread.start()

    def _next_frame(self):
        ret, image = self.cap.read()
        if not ret:
            return None
        h, w = image.shape[:2]
        frame = Frame(
            planes_from_bgr(image, self.pix_fmt), self.pix_fmt, w, h,
            pts=self._index, pkt_pos=self._index, duration=1,
            time_base=(1, round(self.fps)),
        )
        self._index += 1
        return frame

    def _reader_loop(self):
        try:
            while not self._stopped:
                frame = self._next_frame()
                if frame is None:
                    break
                self._queue.put(frame)
        except Exception as exc:
            # re-raised by read() on the consumer thread
            self._queue.put(exc)
        finally:
            self._queue.put(self._sentinel)

    def read(self):
        if self._queue is None:
            frame = self._next_frame()
            return frame is not None, frame

        item = self._queue.get()
        if item is self._sentinel:
            return False, None
        if isinstance(item, Exception):
            raise item
        return True, item

    def release(self):
        self._stopped = True
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=0.5)
        self.cap.release()
