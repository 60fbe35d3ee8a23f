import asyncio
import collections
import json

import websockets.exceptions

from dualscribe import config
from dualscribe import recognition
from dualscribe.errors import AuthenticationError, ConnectivityError

HANG = 'hang'


def fast_settings(**overrides):
    values = dict(open_timeout=.2, close_timeout=1.0, reconnect_backoff=0.0,
                  max_reconnect_attempts=2, api_key='fake-key')
    values.update(overrides)
    return config.RecognizerSettings(**values)


class ScriptedSession(recognition.RecognitionSession):
    """Recognition session driven by the test instead of a service.

    :param connect_errors: Outcome of successive connects; None succeeds,
        an exception is raised and ``HANG`` never completes.
    """
    def __init__(self, settings=None, connect_errors=None, clock=None):
        super(ScriptedSession, self).__init__(settings or fast_settings(),
                                              clock=clock)
        self.connect_errors = list(connect_errors or [])
        self.connects = 0
        self.disconnects = 0
        self.end_requests = 0
        self.sent = []
        self._events = asyncio.Queue()

    async def _connect(self, language_config):
        self.connects += 1
        self._events = asyncio.Queue()
        if self.connect_errors:
            outcome = self.connect_errors.pop(0)
            if outcome == HANG:
                await asyncio.sleep(3600)
            elif outcome is not None:
                raise outcome

    async def _disconnect(self):
        self.disconnects += 1

    async def _send_audio(self, pcm16):
        self.sent.append(pcm16)

    async def _send_end(self):
        self.end_requests += 1
        self._events.put_nowait(('end',))

    async def _read_events(self):
        while True:
            event = await self._events.get()
            if event[0] == 'end':
                return
            elif event[0] == 'drop':
                raise ConnectivityError('connection reset')
            elif event[0] == 'revoke':
                raise AuthenticationError('token revoked')
            else:
                self._emit_result(*event[1:])

    def say(self, text, is_final=True, confidence=.9):
        self._events.put_nowait(('result', text, is_final, confidence))

    def drop(self):
        self._events.put_nowait(('drop',))

    def revoke(self):
        self._events.put_nowait(('revoke',))


class FakeRecognizerWS(object):
    """Stands in for a websocket connection to the recognizer.

    :param start_reply: Reply to the start action.
    :param final_on_stop: Results sent when the stop action arrives.
    """
    def __init__(self, start_reply=None, final_on_stop=None):
        self.start_reply = start_reply or {'state': 'listening'}
        self.final_on_stop = final_on_stop or []
        self.sent_msgs = collections.deque()
        self.connect_kwargs = None
        self.connects = 0
        self.closed = False
        self._recv_msgs = asyncio.Queue()

    async def connect(self, url, **kwargs):
        self.url = url
        self.connect_kwargs = kwargs
        self.connects += 1
        self.closed = False
        self._recv_msgs = asyncio.Queue()
        return self

    async def send(self, data):
        if self.closed:
            raise websockets.exceptions.ConnectionClosed(None, None)
        self.sent_msgs.append(data)
        if isinstance(data, str):
            msg = json.loads(data)
            if msg.get('action') == 'start':
                self.push(self.start_reply)
            elif msg.get('action') == 'stop':
                for result in self.final_on_stop:
                    self.push(result)
                self.push({'state': 'listening'})

    async def recv(self):
        msg = await self._recv_msgs.get()
        if msg is None:
            raise websockets.exceptions.ConnectionClosed(None, None)
        return msg

    async def close(self):
        self.closed = True
        self._recv_msgs.put_nowait(None)

    def push(self, msg):
        self.push_raw(json.dumps(msg))

    def push_raw(self, data):
        self._recv_msgs.put_nowait(data)

    def push_result(self, transcript, final, confidence=None):
        alternative = {'transcript': transcript}
        if confidence is not None:
            alternative['confidence'] = confidence
        self.push({'results': [{'alternatives': [alternative],
                                'final': final}]})

    def disconnect(self):
        self._recv_msgs.put_nowait(None)

    @property
    def audio_msgs(self):
        return [m for m in self.sent_msgs if isinstance(m, bytes)]

    @property
    def control_msgs(self):
        return [json.loads(m) for m in self.sent_msgs if isinstance(m, str)]
