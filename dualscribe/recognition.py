"""Streaming recognition components

The main base class is :class:`RecognitionSession`. A session owns one
duplex connection to a streaming recognizer and is bound to one
:class:`dualscribe.messages.StreamId`. Audio is pushed with
:func:`RecognitionSession.push_frame` and results are put on the session's
channel as :class:`dualscribe.messages.ResultMessage` objects.
"""

import asyncio
import enum
import json
import logging
import time

import websockets
import websockets.exceptions

from dualscribe import config
from dualscribe.errors import (AlreadyOpenError, AuthenticationError,
                               ConnectivityError)
from dualscribe.messages import ControlKind, ControlMessage, ResultMessage

logger = logging.getLogger(__name__)


def wall_clock_ms():
    return time.time() * 1000


class SessionState(enum.Enum):
    IDLE = 'idle'
    OPENING = 'opening'
    ACTIVE = 'active'
    CLOSING = 'closing'


# Queued behind the last frame to request a flush of pending results
_END_OF_STREAM = object()


class RecognitionSession(object):
    """Base class for implementing a streaming recognition session.

    Subclasses override :func:`_connect`, :func:`_disconnect`,
    :func:`_send_audio`, :func:`_send_end` and :func:`_read_events`, and
    report results through :func:`_emit_result`.

    While active, a transient :class:`ConnectivityError` from the connection
    triggers a bounded number of reconnect attempts with exponential
    backoff. If reconnecting is exhausted, or the recognizer rejects the
    credentials, the session returns to idle and a ``SESSION_ERROR``
    :class:`ControlMessage` is put on the channel.

    :parameter settings: Recognizer settings.
    :type settings: dualscribe.config.RecognizerSettings
    :parameter channel: Queue results and control messages are put on. A new
        queue is created if not given.
    :type channel: asyncio.Queue
    :parameter clock: Callable returning the current time in milliseconds.
    """
    def __init__(self, settings, channel=None, clock=None):
        self._settings = settings
        self.channel = channel if channel is not None else asyncio.Queue()
        self._clock = clock or wall_clock_ms
        self.state = SessionState.IDLE
        self.stream_id = None
        self.language_config = None
        self.dropped_frames = 0
        self.reconnects = 0
        self.last_final = None
        self._outgoing = None
        self._run_task = None
        self._last_timestamp = None

    async def open(self, stream_id, language_config=None):
        """Connect to the recognizer.

        :param stream_id: Stream this session transcribes.
        :type stream_id: dualscribe.messages.StreamId
        :param language_config: Recognition language, defaults to the
            configured language.
        :raises AlreadyOpenError: If the session is not idle.
        :raises AuthenticationError: If the credentials are rejected.
        :raises ConnectivityError: If the recognizer can not be reached
            within the open timeout.
        """
        if self.state is not SessionState.IDLE:
            raise AlreadyOpenError(stream_id)
        self.state = SessionState.OPENING
        self.stream_id = stream_id
        self.language_config = language_config or self._settings.language
        try:
            await asyncio.wait_for(self._connect(self.language_config),
                                   self._settings.open_timeout)
        except asyncio.TimeoutError:
            await self._disconnect_quietly()
            self.state = SessionState.IDLE
            raise ConnectivityError('open timed out after %ss' %
                                    self._settings.open_timeout)
        except BaseException:
            await self._disconnect_quietly()
            self.state = SessionState.IDLE
            raise

        self._outgoing = asyncio.Queue(
            maxsize=self._settings.max_pending_frames)
        self._last_timestamp = None
        self.dropped_frames = 0
        self.state = SessionState.ACTIVE
        self._run_task = asyncio.ensure_future(self._run())
        logger.info('Recognition session for %s active', stream_id)

    def push_frame(self, stream_id, frame):
        """Queue a frame for sending. Never blocks.

        :param frame: Audio to send.
        :type frame: dualscribe.audio.AudioFrame
        :ret: False if the frame was not accepted, either because no active
            session exists for ``stream_id`` or because the outgoing queue
            is saturated.
        :rtype: bool
        """
        if self.state is not SessionState.ACTIVE or \
                stream_id != self.stream_id:
            return False
        try:
            self._outgoing.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped_frames += 1
            if self.dropped_frames == 1 or self.dropped_frames % 100 == 0:
                logger.warning('Recognition session for %s saturated, '
                               '%d frames dropped', stream_id,
                               self.dropped_frames)
            return False
        return True

    async def close(self, stream_id=None):
        """Flush pending audio and results, then disconnect.

        Always safe; a no-op if the session is not active.
        """
        if self.state is not SessionState.ACTIVE:
            return
        if stream_id is not None and stream_id != self.stream_id:
            return
        self.state = SessionState.CLOSING
        try:
            await asyncio.wait_for(self._flush(),
                                   self._settings.close_timeout)
        except asyncio.TimeoutError:
            logger.warning('Recognition session for %s did not flush within '
                           '%ss', self.stream_id,
                           self._settings.close_timeout)
        except Exception:
            logger.exception('Error flushing recognition session for %s',
                             self.stream_id)
        finally:
            await self._cancel_run()
            await self._disconnect_quietly()
            self._outgoing = None
            self.state = SessionState.IDLE
            logger.info('Recognition session for %s closed', self.stream_id)

    def status(self):
        return {
            'stream_id': self.stream_id,
            'state': self.state.value,
            'dropped_frames': self.dropped_frames,
            'reconnects': self.reconnects,
            'last_final': self.last_final,
        }

    async def _flush(self):
        await self._outgoing.put(_END_OF_STREAM)
        if self._run_task is not None:
            await asyncio.shield(self._run_task)

    async def _cancel_run(self):
        if self._run_task is None:
            return
        task, self._run_task = self._run_task, None
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception('Recognition session for %s ended with an '
                             'error', self.stream_id)

    async def _run(self):
        while True:
            try:
                await self._pump()
                return
            except AuthenticationError as e:
                await self._fail(e)
                return
            except ConnectivityError as e:
                if self.state is not SessionState.ACTIVE:
                    return
                if not await self._reconnect(e):
                    return
            except Exception as e:
                logger.exception('Unexpected recognizer failure for %s',
                                 self.stream_id)
                await self._fail(e)
                return

    async def _pump(self):
        send_task = asyncio.ensure_future(self._send_frames())
        read_task = asyncio.ensure_future(self._read_events())
        try:
            while True:
                waits = [task for task in (send_task, read_task)
                         if not task.done()]
                done, pending = await asyncio.wait(
                    waits,
                    return_when=asyncio.FIRST_COMPLETED
                )
                for fut in done:
                    exc = fut.exception()
                    if exc:
                        raise exc

                if read_task.done():
                    if self.state is SessionState.ACTIVE:
                        raise ConnectivityError('recognizer ended the stream')
                    break
        finally:
            send_task.cancel()
            read_task.cancel()

    async def _send_frames(self):
        while True:
            frame = await self._outgoing.get()
            if frame is _END_OF_STREAM:
                await self._send_end()
            else:
                await self._send_audio(bytes(frame.pcm16))

    async def _reconnect(self, cause):
        attempts = self._settings.max_reconnect_attempts
        for attempt in range(1, attempts + 1):
            delay = min(self._settings.reconnect_backoff * 2 ** (attempt - 1),
                        self._settings.reconnect_backoff_max)
            logger.warning('Recognition session for %s lost (%s), '
                           'reconnecting in %.1fs (%d/%d)', self.stream_id,
                           cause, delay, attempt, attempts)
            await asyncio.sleep(delay)
            if self.state is not SessionState.ACTIVE:
                return False
            await self._disconnect_quietly()
            try:
                await asyncio.wait_for(self._connect(self.language_config),
                                       self._settings.open_timeout)
            except AuthenticationError as e:
                await self._fail(e)
                return False
            except (ConnectivityError, asyncio.TimeoutError) as e:
                cause = e
                continue
            self.reconnects += 1
            logger.info('Recognition session for %s reconnected',
                        self.stream_id)
            return True

        await self._fail(ConnectivityError(
            'gave up after %d reconnect attempts: %s' % (attempts, cause)))
        return False

    async def _fail(self, exc):
        logger.error('Recognition session for %s failed: %s',
                     self.stream_id, exc)
        self.state = SessionState.IDLE
        self._outgoing = None
        await self._disconnect_quietly()
        self.channel.put_nowait(
            ControlMessage(self.stream_id, ControlKind.SESSION_ERROR, exc))

    async def _disconnect_quietly(self):
        try:
            await self._disconnect()
        except Exception:
            logger.debug('Error disconnecting %s', self.stream_id,
                         exc_info=True)

    def _emit_result(self, text, is_final, confidence=None):
        text = (text or '').strip()
        if not is_final and not text:
            return

        timestamp = self._clock()
        if self._last_timestamp is not None:
            timestamp = max(timestamp, self._last_timestamp)
        self._last_timestamp = timestamp

        if is_final:
            try:
                confidence = min(1.0, max(0.0, float(confidence or 0.0)))
            except (TypeError, ValueError):
                confidence = 0.0
            self.last_final = {'text': text, 'confidence': confidence,
                               'timestamp': timestamp}
        else:
            confidence = None

        self.channel.put_nowait(ResultMessage(self.stream_id, text, is_final,
                                              confidence, timestamp))

    async def _connect(self, language_config):
        pass

    async def _disconnect(self):
        pass

    async def _send_audio(self, pcm16):
        pass

    async def _send_end(self):
        pass

    async def _read_events(self):
        pass


class WebsocketRecognitionSession(RecognitionSession):
    """Recognizer speaking a JSON control protocol over a websocket.

    After connecting, a ``start`` action is sent and the recognizer must
    reply ``{"state": "listening"}``. Audio is sent as binary messages of
    16kHz mono s16le PCM. Results arrive as::

        {"results": [{"alternatives": [{"transcript": "...",
                                        "confidence": 0.9}],
                      "final": true}]}

    A ``stop`` action flushes the utterance in progress; the recognizer
    answers with its remaining results followed by another
    ``{"state": "listening"}``. ``{"error": "...", "code": 401}`` rejects
    the credentials.
    """
    AUTH_FAILURE_CODES = (401, 403)

    def __init__(self, settings, channel=None, clock=None):
        super(WebsocketRecognitionSession, self).__init__(settings, channel,
                                                          clock)
        self._ws = None
        self._end_sent = False

    async def _connect(self, language_config):
        headers = {}
        api_key = self._settings.api_key.get_secret_value()
        if api_key:
            headers['Authorization'] = 'Bearer %s' % api_key
        try:
            self._ws = await websockets.connect(self._settings.url,
                                                additional_headers=headers)
        except websockets.exceptions.InvalidStatus as e:
            status = e.response.status_code
            if status in self.AUTH_FAILURE_CODES:
                raise AuthenticationError('HTTP %d' % status)
            raise ConnectivityError('HTTP %d' % status)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            raise ConnectivityError(e)
        self._end_sent = False
        await self._send_start(language_config)

    async def _disconnect(self):
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()

    async def _send_start(self, language_config):
        start_data = {
            'action': 'start',
            'content-type': 'audio/l16;rate=%d' % config.SAMPLE_RATE,
            'language': language_config,
            'interim_results': self._settings.interim_results,
            'continuous': True,
        }
        try:
            await self._ws.send(json.dumps(start_data))
            msg = json.loads(await self._ws.recv())
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectivityError(e)
        except ValueError as e:
            raise ConnectivityError('malformed start reply: %s' % e)
        self._check_error(msg)
        if msg.get('state') != 'listening':
            raise ConnectivityError('unexpected start reply: %s' % msg)

    async def _send_audio(self, pcm16):
        try:
            await self._ws.send(pcm16)
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectivityError(e)

    async def _send_end(self):
        self._end_sent = True
        try:
            await self._ws.send(json.dumps({'action': 'stop'}))
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectivityError(e)

    async def _read_events(self):
        while True:
            try:
                read = await self._ws.recv()
            except websockets.exceptions.ConnectionClosed as e:
                if self.state is SessionState.CLOSING:
                    return
                raise ConnectivityError(e)
            try:
                msg = json.loads(read)
            except ValueError:
                logger.warning('Ignoring malformed message from recognizer '
                               'for %s', self.stream_id)
                continue
            self._check_error(msg)
            if msg.get('state') == 'listening' and self._end_sent:
                return
            self._handle_results(msg)

    def _handle_results(self, msg):
        for result in msg.get('results', []):
            alternatives = result.get('alternatives') or [{}]
            best = alternatives[0]
            self._emit_result(best.get('transcript', ''),
                              bool(result.get('final', False)),
                              best.get('confidence'))

    def _check_error(self, msg):
        if 'error' not in msg:
            return
        if msg.get('code') in self.AUTH_FAILURE_CODES:
            raise AuthenticationError(msg['error'])
        raise ConnectivityError(msg['error'])
