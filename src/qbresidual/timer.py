import time


class FPSTimer:
    def __init__(self, window=1.0):
        self.window = window
        self.last = time.perf_counter()
        self.frames = 0
        self.total = 0
        self.fps = 0.0

    def update(self):
        self.frames += 1
        self.total += 1
        now = time.perf_counter()
        elapsed = now - self.last
        if elapsed >= self.window and elapsed > 0:
            self.fps = self.frames / elapsed
            self.frames = 0
            self.last = now
        return self.fps
