"""Stream identities and the messages passed between components.

Recognition sessions put :class:`ResultMessage` and :class:`ControlMessage`
objects on a channel (an :class:`asyncio.Queue`) which the orchestrator
drains from a single loop.
"""

import collections
import enum


class StreamId(enum.Enum):
    """The fixed set of audio streams a recording is made of."""
    MICROPHONE = 'microphone'
    SYSTEM = 'system'

    @property
    def speaker(self):
        """Speaker label shown for transcripts from this stream."""
        if self is StreamId.MICROPHONE:
            return 'Me'
        elif self is StreamId.SYSTEM:
            return 'Other'
        raise ValueError('Unknown stream %s' % self)

    @classmethod
    def from_speaker(cls, speaker):
        for stream_id in cls:
            if stream_id.speaker == speaker:
                return stream_id
        raise ValueError('Unknown speaker %r' % speaker)


class ControlKind(enum.Enum):
    SESSION_ERROR = 'session-error'
    SOURCE_ACTIVE = 'source-active'
    SOURCE_INACTIVE = 'source-inactive'


ResultMessage = collections.namedtuple(
    'ResultMessage',
    ['stream_id', 'text', 'is_final', 'confidence', 'timestamp'])
"""A single recognition result for one stream.

:param stream_id: Stream which produced the result.
:type stream_id: StreamId
:param text: Recognized text.
:type text: str
:param is_final: True for the committed result of an utterance.
:type is_final: bool
:param confidence: Score in [0, 1]; None for interim results.
:type confidence: float
:param timestamp: Milliseconds since the epoch.
:type timestamp: float
"""


ControlMessage = collections.namedtuple(
    'ControlMessage', ['stream_id', 'kind', 'error'])
"""Lifecycle or error notification for one stream.

:param error: The exception behind a ``SESSION_ERROR``, otherwise None.
"""
