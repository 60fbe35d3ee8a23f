"""Recording orchestration

:class:`SessionOrchestrator` runs N :class:`StreamPipeline` objects (one
capture feeding one recognition session) as a single recording. Frames are
forwarded from each capture to its session, and every result put on the
shared channel is routed to the :class:`dualscribe.transcript.TranscriptEngine`
from one loop, so the transcript log has a single writer.
"""

import asyncio
import collections
import logging

from dualscribe import audio
from dualscribe import recognition
from dualscribe import transcript
from dualscribe import utils
from dualscribe.errors import AuthenticationError, RecordingStartError
from dualscribe.messages import (ControlKind, ControlMessage, ResultMessage,
                                 StreamId)

logger = logging.getLogger(__name__)


class StreamPipeline(object):
    """A capture feeding a recognition session for one stream.

    :param stream_id: Stream identity, also the capture's source id.
    :type stream_id: dualscribe.messages.StreamId
    :param capture: Audio source.
    :type capture: dualscribe.audio.AudioSourceCapture
    :param session: Recognition session.
    :type session: dualscribe.recognition.RecognitionSession
    :param source_spec: Passed to :func:`AudioSourceCapture.acquire`.
    """
    def __init__(self, stream_id, capture, session, source_spec=None):
        self.stream_id = stream_id
        self.capture = capture
        self.session = session
        self.source_spec = source_spec
        self.dropped_frames = 0
        self.restarts = 0
        self.failed = False

    def reset(self):
        self.dropped_frames = 0
        self.restarts = 0
        self.failed = False

    def status(self):
        return {
            'stream_id': self.stream_id.value,
            'speaker': self.stream_id.speaker,
            'capture_active': self.capture.active,
            'capture_dropped_frames': self.capture.dropped_frames,
            'routing_dropped_frames': self.dropped_frames,
            'restarts': self.restarts,
            'failed': self.failed,
            'session': self.session.status(),
        }


class SessionOrchestrator(object):
    """Start and stop all pipelines as one atomic recording.

    Each pipeline's recognition session is attached to the orchestrator's
    channel.

    :param settings: Orchestrator settings.
    :type settings: dualscribe.config.OrchestratorSettings
    :param engine: Transcript engine results are routed to.
    :type engine: dualscribe.transcript.TranscriptEngine
    :param pipelines: One pipeline per stream.
    :type pipelines: list of StreamPipeline
    :param language: Recognition language passed to every session.
    """
    def __init__(self, settings, engine, pipelines, language=None):
        self._settings = settings
        self.engine = engine
        self.pipelines = list(pipelines)
        self.language = language
        self.channel = asyncio.Queue()
        self.recording = False
        self._stopping = False
        self.session_id = None
        self._pipelines = collections.OrderedDict()
        self._lock = asyncio.Lock()
        self._router_task = None
        self._router_stop = asyncio.Event()
        self._reopen_tasks = set()

        for pipeline in self.pipelines:
            if pipeline.stream_id in self._pipelines:
                raise ValueError('Duplicate stream %s' % pipeline.stream_id)
            self._pipelines[pipeline.stream_id] = pipeline
            pipeline.session.channel = self.channel
            pipeline.capture.on_frame(self._frame_router(pipeline))
            pipeline.capture.on_lifecycle(self._on_lifecycle)

    async def start_recording(self, options=None):
        """Open every recognition session, then acquire every capture.

        Any failure rolls back what was already opened.

        :param options: Extra metadata stored with the transcript session.
        :type options: dict
        :ret: The new transcript session id, or the current one if already
            recording.
        :raises RecordingStartError: With the cause of the failed stream.
        """
        async with self._lock:
            if self.recording:
                logger.info('Recording already in progress')
                return self.session_id

            logger.info('Starting recording of %d streams',
                        len(self.pipelines))
            self._discard_stale_messages()
            for pipeline in self.pipelines:
                pipeline.reset()

            opened = []
            for pipeline in self.pipelines:
                try:
                    await pipeline.session.open(pipeline.stream_id,
                                                self.language)
                except Exception as e:
                    await self._rollback(opened, [])
                    raise RecordingStartError(
                        {pipeline.stream_id.value: e})
                opened.append(pipeline)

            acquired = []
            for pipeline in self.pipelines:
                try:
                    await pipeline.capture.acquire(pipeline.source_spec)
                except Exception as e:
                    await self._rollback(opened, acquired)
                    raise RecordingStartError(
                        {pipeline.stream_id.value: e})
                acquired.append(pipeline)

            self._router_stop.clear()
            self._router_task = asyncio.ensure_future(self._route_results())

            metadata = {
                'capture_mode': 'dual' if len(self.pipelines) > 1
                                else 'single',
                'streams': [p.stream_id.value for p in self.pipelines],
                'language': self.language,
            }
            metadata.update(options or {})
            self.session_id = await self.engine.start_session(metadata)
            self.recording = True
            logger.info('Recording started, session %s', self.session_id)
            return self.session_id

    async def stop_recording(self):
        """Tear everything down and seal the transcript session.

        Results which arrive during the grace period are still added to the
        session. A no-op if not recording.

        :ret: Session summary, or None if not recording.
        """
        async with self._lock:
            if not self.recording:
                logger.debug('No recording in progress')
                return None
            logger.info('Stopping recording, session %s', self.session_id)
            self._stopping = True

            for pipeline in self.pipelines:
                try:
                    await pipeline.capture.release()
                except Exception:
                    logger.exception('Error releasing %s capture',
                                     pipeline.stream_id)

            await self._cancel_reopens()
            for pipeline in self.pipelines:
                try:
                    await pipeline.session.close(pipeline.stream_id)
                except Exception:
                    logger.exception('Error closing %s recognition session',
                                     pipeline.stream_id)

            if self._settings.stop_grace_period:
                await asyncio.sleep(self._settings.stop_grace_period)
            await self._stop_router()

            summary = None
            try:
                summary = await self.engine.end_session()
            except Exception:
                logger.exception('Error ending transcript session %s',
                                 self.session_id)

            self.recording = False
            self._stopping = False
            self.session_id = None
            logger.info('Recording stopped')
            return summary

    async def toggle_recording(self, options=None):
        if self.recording:
            return await self.stop_recording()
        return await self.start_recording(options)

    def get_recent_transcripts(self, n=10):
        return self.engine.get_recent(n)

    def search_transcripts(self, query, **options):
        return self.engine.search(query, **options)

    def export_session(self, fmt='json'):
        return self.engine.export(fmt)

    def status(self):
        return {
            'recording': self.recording,
            'session_id': self.session_id,
            'streams': [p.status() for p in self.pipelines],
        }

    def _frame_router(self, pipeline):
        async def route(frame):
            if not pipeline.session.push_frame(pipeline.stream_id, frame):
                pipeline.dropped_frames += 1
        return route

    async def _on_lifecycle(self, source_id, kind):
        self.channel.put_nowait(ControlMessage(source_id, kind, None))

    async def _route_results(self):
        while True:
            try:
                msg = await utils.interruptable_get(self.channel,
                                                    self._router_stop)
            except utils.InterruptError:
                break
            await self._route(msg)

        # Everything queued before the stop request still belongs to the
        # session being stopped
        while True:
            try:
                msg = self.channel.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._route(msg)

    async def _route(self, msg):
        try:
            await self._handle_message(msg)
        except Exception:
            logger.exception('Error handling %r', msg)

    async def _handle_message(self, msg):
        if isinstance(msg, ResultMessage):
            if msg.is_final:
                self.engine.add_final(msg.stream_id, msg.text,
                                      msg.confidence, msg.timestamp)
            else:
                self.engine.add_interim(msg.stream_id, msg.text,
                                        msg.timestamp)
        elif isinstance(msg, ControlMessage):
            if msg.kind is ControlKind.SESSION_ERROR:
                self._handle_stream_error(msg)
            else:
                logger.info('Audio source %s: %s', msg.stream_id,
                            msg.kind.value)
        else:
            logger.warning('Ignoring unknown message %r', msg)

    def _handle_stream_error(self, msg):
        pipeline = self._pipelines.get(msg.stream_id)
        if pipeline is None:
            return
        logger.error('Stream %s failed: %s', msg.stream_id, msg.error)
        if not self.recording or self._stopping:
            return
        if isinstance(msg.error, AuthenticationError) or \
                pipeline.restarts >= self._settings.max_stream_restarts:
            logger.error('Stream %s left down, recording continues on the '
                         'remaining streams', msg.stream_id)
            pipeline.failed = True
            return
        pipeline.restarts += 1
        task = asyncio.ensure_future(self._reopen(pipeline))
        self._reopen_tasks.add(task)
        task.add_done_callback(self._reopen_tasks.discard)

    async def _reopen(self, pipeline):
        logger.info('Reopening recognition session for %s (%d/%d)',
                    pipeline.stream_id, pipeline.restarts,
                    self._settings.max_stream_restarts)
        try:
            await pipeline.session.open(pipeline.stream_id, self.language)
        except Exception as e:
            logger.error('Unable to reopen %s: %s', pipeline.stream_id, e)
            pipeline.failed = True

    async def _cancel_reopens(self):
        tasks = list(self._reopen_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _stop_router(self):
        if self._router_task is None:
            return
        self._router_stop.set()
        task, self._router_task = self._router_task, None
        try:
            await task
        except Exception:
            logger.exception('Result router failed')

    async def _rollback(self, opened, acquired):
        for pipeline in acquired:
            try:
                await pipeline.capture.release()
            except Exception:
                logger.exception('Error releasing %s during rollback',
                                 pipeline.stream_id)
        for pipeline in opened:
            try:
                await pipeline.session.close(pipeline.stream_id)
            except Exception:
                logger.exception('Error closing %s during rollback',
                                 pipeline.stream_id)
        self._discard_stale_messages()

    def _discard_stale_messages(self):
        discarded = 0
        while True:
            try:
                self.channel.get_nowait()
            except asyncio.QueueEmpty:
                break
            discarded += 1
        if discarded:
            logger.warning('Discarded %d results received outside of a '
                           'recording', discarded)


def create_orchestrator(settings, engine=None, mic_spec=None,
                        system_spec=None):
    """Build a microphone + system audio orchestrator.

    :param settings: Complete settings.
    :type settings: dualscribe.config.Settings
    :param mic_spec: Capture spec for the microphone, defaults to the
        configured microphone device.
    :param system_spec: Capture spec for the loopback device, defaults to the
        configured system device.
    :rtype: SessionOrchestrator
    """
    engine = engine or transcript.TranscriptEngine(settings.transcript)
    capture_settings = settings.capture
    specs = {
        StreamId.MICROPHONE: mic_spec or audio.SourceSpec(
            device_index=capture_settings.mic_device_index),
        StreamId.SYSTEM: system_spec or audio.SourceSpec(
            device_index=capture_settings.system_device_index),
    }
    pipelines = []
    for stream_id in StreamId:
        capture = audio.DeviceCapture(
            stream_id,
            frames_per_buffer=capture_settings.frames_per_buffer,
            max_queue_depth=capture_settings.max_queue_depth)
        session = recognition.WebsocketRecognitionSession(settings.recognizer)
        pipelines.append(StreamPipeline(stream_id, capture, session,
                                        specs[stream_id]))
    return SessionOrchestrator(settings.orchestrator, engine, pipelines,
                               language=settings.recognizer.language)
