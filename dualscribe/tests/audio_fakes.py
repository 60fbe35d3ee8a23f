import numpy as np

from dualscribe import audio


def silent_pcm(ms=100):
    return b'\0\0' * int(16 * ms)


def tone_pcm(value, samples=160):
    return np.full(samples, value, dtype='<i2').tobytes()


class FakeCapture(audio.AudioSourceCapture):
    """Capture whose frames are fed by the test."""
    def __init__(self, source_id, fail_with=None, max_queue_depth=50):
        super(FakeCapture, self).__init__(source_id, max_queue_depth)
        self.fail_with = fail_with
        self.open_count = 0
        self.close_count = 0
        self.spec = None

    async def _open(self, source_spec):
        self.open_count += 1
        self.spec = source_spec
        if self.fail_with is not None:
            raise self.fail_with

    async def _close(self):
        self.close_count += 1

    def feed(self, pcm16, timestamp_ms=None):
        self._enqueue(pcm16, timestamp_ms)


class FrameRecorder(object):
    def __init__(self):
        self.frames = []
        self.lifecycle = []

    async def handle_frame(self, frame):
        self.frames.append(frame)

    async def handle_lifecycle(self, source_id, kind):
        self.lifecycle.append((source_id, kind))
