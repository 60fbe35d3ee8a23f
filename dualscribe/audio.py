"""Audio capture components

The main base class is :class:`AudioSourceCapture` which acquires audio from
one physical source, normalizes it to canonical PCM (16kHz, mono, 16-bit
signed little endian) and delivers :class:`AudioFrame` objects, in arrival
order, to the callbacks registered with :func:`AudioSourceCapture.on_frame`.

Audio arrives on a platform audio thread. It is handed to the event loop
through a bounded :class:`janus.Queue` so that the audio thread never blocks;
when the event loop falls behind the oldest queued frame is dropped.
"""

import asyncio
import collections
import logging
import time
import wave

import janus
import numpy as np
try:
    import pyaudio
except ImportError:
    # pyaudio needs portaudio headers; only DeviceCapture requires it
    pyaudio = None

from dualscribe import config
from dualscribe.errors import AcquisitionError, UnsupportedFormatError
from dualscribe.messages import ControlKind

logger = logging.getLogger(__name__)


AudioFrame = collections.namedtuple('AudioFrame',
                                    ['source_id', 'timestamp_ms', 'pcm16'])
"""A block of canonical PCM audio from one source.

In order to keep frames cheap this is implemented as a namedtuple.

:param source_id: Identity of the capture that produced the frame.
:type source_id: dualscribe.messages.StreamId
:param timestamp_ms: Wall clock capture time in milliseconds.
:type timestamp_ms: float
:param pcm16: 16kHz mono signed 16-bit little endian samples.
:type pcm16: bytes
"""


SourceSpec = collections.namedtuple(
    'SourceSpec', ['device_index', 'rate', 'channels', 'sample_format'])
SourceSpec.__new__.__defaults__ = (None, config.SAMPLE_RATE, config.CHANNELS,
                                   'int16')
"""Description of a capture device.

:param device_index: PyAudio device index, None for the default input.
:param rate: Native sample rate of the device.
:param channels: Native channel count of the device.
:param sample_format: One of ``'int16'``, ``'float32'`` or ``'float64'``.
"""


SAMPLE_DTYPES = {
    'int16': np.dtype('<i2'),
    'float32': np.dtype('<f4'),
    'float64': np.dtype('<f8'),
}

INT16_FULL_SCALE = 32767


def sample_dtype(sample_format):
    """Numpy dtype for a sample format name.

    :raises UnsupportedFormatError: If the format is not recognized.
    """
    try:
        return SAMPLE_DTYPES[sample_format]
    except (KeyError, TypeError):
        raise UnsupportedFormatError(sample_format)


def resample(samples, in_rate, out_rate):
    """Linearly interpolate a mono sample array to a new rate."""
    if in_rate == out_rate or len(samples) == 0:
        return samples
    out_len = int(round(len(samples) * out_rate / in_rate))
    src_pos = np.arange(len(samples))
    out_pos = np.linspace(0, len(samples) - 1, out_len)
    return np.interp(out_pos, src_pos, samples)


def to_pcm16(samples, sample_format='int16', channels=config.CHANNELS,
             rate=config.SAMPLE_RATE):
    """Convert raw samples to canonical PCM.

    Float samples are clamped to [-1, 1] and scaled to int16 full scale,
    interleaved channels are averaged down to mono and the result is
    resampled to 16kHz.

    :param samples: Raw interleaved samples.
    :type samples: bytes or numpy.ndarray
    :param sample_format: Format of ``samples`` when given as bytes. Arrays
        use their own dtype.
    :param channels: Number of interleaved channels.
    :param rate: Sample rate of ``samples``.
    :ret: 16kHz mono int16 little endian bytes.
    :rtype: bytes
    """
    if isinstance(samples, np.ndarray):
        data = samples
        if data.dtype.name not in SAMPLE_DTYPES:
            raise UnsupportedFormatError(data.dtype.name)
    else:
        dtype = sample_dtype(sample_format)
        usable = len(samples) - len(samples) % dtype.itemsize
        data = np.frombuffer(samples[:usable], dtype=dtype)

    if data.dtype.kind == 'f':
        scaled = np.clip(data, -1.0, 1.0) * INT16_FULL_SCALE
    else:
        scaled = data.astype(np.float64)

    if channels > 1:
        usable = scaled.size - scaled.size % channels
        scaled = scaled.reshape(-1)[:usable].reshape(-1, channels).mean(axis=1)
    else:
        scaled = scaled.reshape(-1)

    scaled = resample(scaled, rate, config.SAMPLE_RATE)
    scaled = np.clip(scaled, -32768, INT16_FULL_SCALE)
    return scaled.astype('<i2').tobytes()


def enumerate_devices():
    """List local audio devices.

    :ret: List of ``{id, label, kind}`` dicts where kind is ``'input'`` or
        ``'output'``. Devices with both capabilities are listed twice.
    """
    if pyaudio is None:
        raise AcquisitionError('devices', 'pyaudio is not installed')
    p = pyaudio.PyAudio()
    try:
        devices = []
        for i in range(p.get_device_count()):
            info = p.get_device_info_by_index(i)
            if info.get('maxInputChannels', 0) > 0:
                devices.append({'id': i, 'label': info.get('name'),
                                'kind': 'input'})
            if info.get('maxOutputChannels', 0) > 0:
                devices.append({'id': i, 'label': info.get('name'),
                                'kind': 'output'})
        return devices
    finally:
        p.terminate()


class _ListenCtxtMgr(object):
    def __init__(self, capture, source_spec):
        self._capture = capture
        self._source_spec = source_spec

    async def __aenter__(self):
        await self._capture.acquire(self._source_spec)
        return self._capture

    async def __aexit__(self, *args):
        await self._capture.release()


class AudioSourceCapture(object):
    """Base class for acquiring audio from one physical source.

    Subclasses override :func:`_open` and :func:`_close` and call
    :func:`_enqueue` (from any thread) with canonical PCM.

    :param source_id: Identity stamped on every emitted frame.
    :type source_id: dualscribe.messages.StreamId
    :param max_queue_depth: Frames held before the oldest is dropped.
    :type max_queue_depth: int
    """
    def __init__(self, source_id, max_queue_depth=50):
        self.source_id = source_id
        self.active = False
        self.dropped_frames = 0
        self._max_queue_depth = max_queue_depth
        self._queue = None
        self._deliver_task = None
        self._frame_handlers = []
        self._lifecycle_handlers = []

    def listen(self, source_spec=None):
        """Async context manager which acquires and releases the source."""
        return _ListenCtxtMgr(self, source_spec)

    def on_frame(self, handler):
        """Register a coroutine function called with every AudioFrame."""
        self._frame_handlers.append(handler)

    def on_lifecycle(self, handler):
        """Register a coroutine function called as ``handler(source_id,
        kind)`` with a :class:`dualscribe.messages.ControlKind`."""
        self._lifecycle_handlers.append(handler)

    async def acquire(self, source_spec=None):
        """Open the device and begin delivering frames.

        A no-op if the source is already active.

        :raises AcquisitionError: On permission or device failure.
        :raises UnsupportedFormatError: If the device format can not be
            converted.
        """
        if self.active:
            return
        self._queue = janus.Queue(maxsize=self._max_queue_depth)
        self.dropped_frames = 0
        try:
            await self._open(source_spec)
        except (AcquisitionError, UnsupportedFormatError):
            await self._close_queue()
            raise
        except Exception as e:
            await self._close_queue()
            raise AcquisitionError(self.source_id, e)

        self.active = True
        self._deliver_task = asyncio.ensure_future(self._deliver())
        logger.info('Audio source %s active', self.source_id)
        await self._emit_lifecycle(ControlKind.SOURCE_ACTIVE)

    async def release(self):
        """Stop the device. Safe to call repeatedly."""
        if not self.active:
            return
        self.active = False
        try:
            await self._close()
        except Exception:
            logger.exception('Error closing audio source %s', self.source_id)

        self._deliver_task.cancel()
        try:
            await self._deliver_task
        except asyncio.CancelledError:
            pass
        self._deliver_task = None

        # Deliver whatever the device produced before it stopped
        while True:
            try:
                frame = self._queue.async_q.get_nowait()
            except janus.AsyncQueueEmpty:
                break
            await self._dispatch(frame)
        await self._close_queue()

        if self.dropped_frames:
            logger.warning('Audio source %s dropped %d frames',
                           self.source_id, self.dropped_frames)
        logger.info('Audio source %s inactive', self.source_id)
        await self._emit_lifecycle(ControlKind.SOURCE_INACTIVE)

    def _enqueue(self, pcm16, timestamp_ms=None):
        """Hand a block of canonical PCM to the event loop.

        Never blocks. If the queue is full the oldest frame is dropped.
        """
        if not self.active or self._queue is None:
            return
        if timestamp_ms is None:
            timestamp_ms = time.time() * 1000
        frame = AudioFrame(self.source_id, timestamp_ms, pcm16)
        sync_q = self._queue.sync_q
        try:
            sync_q.put_nowait(frame)
            return
        except janus.SyncQueueFull:
            pass

        try:
            sync_q.get_nowait()
        except janus.SyncQueueEmpty:
            pass
        self.dropped_frames += 1
        if self.dropped_frames == 1 or self.dropped_frames % 100 == 0:
            logger.warning('Audio source %s queue full (depth %d), %d '
                           'frames dropped', self.source_id,
                           self._max_queue_depth, self.dropped_frames)
        try:
            sync_q.put_nowait(frame)
        except janus.SyncQueueFull:
            self.dropped_frames += 1

    async def _deliver(self):
        while True:
            frame = await self._queue.async_q.get()
            await self._dispatch(frame)

    async def _dispatch(self, frame):
        for handler in self._frame_handlers:
            try:
                await handler(frame)
            except Exception:
                logger.exception('Frame handler failed for %s',
                                 self.source_id)

    async def _emit_lifecycle(self, kind):
        for handler in self._lifecycle_handlers:
            await handler(self.source_id, kind)

    async def _close_queue(self):
        if self._queue is not None:
            self._queue.close()
            await self._queue.wait_closed()
            self._queue = None

    async def _open(self, source_spec):
        """Open the underlying device. Subclasses should override."""
        pass

    async def _close(self):
        """Close the underlying device. Subclasses should override."""
        pass


class DeviceCapture(AudioSourceCapture):
    """Capture a local PyAudio input device.

    Used both for the microphone and for loopback / monitor devices which
    carry the system audio output.

    :parameter frames_per_buffer: Samples per device callback.
    :type frames_per_buffer: int
    """
    PA_FORMATS = {
        'int16': 'paInt16',
        'float32': 'paFloat32',
    }

    def __init__(self, source_id, frames_per_buffer=1600, max_queue_depth=50):
        super(DeviceCapture, self).__init__(source_id, max_queue_depth)
        self._frames_per_buffer = frames_per_buffer
        self._spec = None
        self._pyaudio = None
        self._stream = None

    async def _open(self, source_spec):
        spec = source_spec or SourceSpec()
        if spec.sample_format not in self.PA_FORMATS:
            raise UnsupportedFormatError(spec.sample_format)
        if pyaudio is None:
            raise AcquisitionError(self.source_id, 'pyaudio is not installed')
        self._spec = spec

        loop = asyncio.get_event_loop()
        self._pyaudio = pyaudio.PyAudio()
        try:
            self._stream = await loop.run_in_executor(None, self._open_stream)
        except Exception as e:
            self._pyaudio.terminate()
            self._pyaudio = None
            raise AcquisitionError(self.source_id, e)

    def _open_stream(self):
        return self._pyaudio.open(
            input=True,
            format=getattr(pyaudio, self.PA_FORMATS[self._spec.sample_format]),
            channels=self._spec.channels,
            rate=self._spec.rate,
            input_device_index=self._spec.device_index,
            frames_per_buffer=self._frames_per_buffer,
            stream_callback=self._stream_callback
        )

    async def _close(self):
        if self._stream is not None:
            self._stream.stop_stream()
            self._stream.close()
            self._stream = None
        if self._pyaudio is not None:
            self._pyaudio.terminate()
            self._pyaudio = None

    def _stream_callback(self, in_data, frame_count, time_info, status_flags):
        if status_flags:
            logger.debug('Audio source %s status flags %s', self.source_id,
                         status_flags)
        if self.active:
            spec = self._spec
            try:
                self._enqueue(to_pcm16(in_data, spec.sample_format,
                                       spec.channels, spec.rate))
            except Exception:
                logger.exception('Dropping undecodable block from %s',
                                 self.source_id)
        retflag = pyaudio.paContinue if self.active else pyaudio.paComplete
        return (None, retflag)


class WaveCapture(AudioSourceCapture):
    """Replay a wave file as if it were a live source.

    The source spec passed to :func:`acquire` is the path of the wave file.

    :parameter chunk_frames: Samples read per emitted frame.
    :type chunk_frames: int
    :parameter realtime: Pace frames at the rate they were recorded.
    :type realtime: bool
    """
    def __init__(self, source_id, chunk_frames=1600, realtime=True,
                 max_queue_depth=50):
        super(WaveCapture, self).__init__(source_id, max_queue_depth)
        self._chunk_frames = chunk_frames
        self._realtime = realtime
        self._wave_fp = None
        self._reader_task = None
        self.finished = asyncio.Event()

    WIDTH_FORMATS = {2: 'int16'}

    async def _open(self, source_spec):
        try:
            self._wave_fp = wave.open(source_spec, 'rb')
        except (OSError, wave.Error, EOFError) as e:
            raise AcquisitionError(self.source_id, e)
        width = self._wave_fp.getsampwidth()
        if width not in self.WIDTH_FORMATS:
            self._wave_fp.close()
            self._wave_fp = None
            raise UnsupportedFormatError('%d byte samples' % width)
        self.finished.clear()
        self._reader_task = asyncio.ensure_future(self._read())

    async def _close(self):
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._wave_fp is not None:
            self._wave_fp.close()
            self._wave_fp = None

    async def _read(self):
        sample_format = self.WIDTH_FORMATS[self._wave_fp.getsampwidth()]
        channels = self._wave_fp.getnchannels()
        rate = self._wave_fp.getframerate()
        start = time.time() * 1000
        offset = 0
        while True:
            frames = self._wave_fp.readframes(self._chunk_frames)
            if not frames:
                break
            self._enqueue(to_pcm16(frames, sample_format, channels, rate),
                          start + offset * 1000.0 / rate)
            offset += self._chunk_frames
            if self._realtime:
                await asyncio.sleep(self._chunk_frames / rate)
            else:
                await asyncio.sleep(0)
        self.finished.set()
