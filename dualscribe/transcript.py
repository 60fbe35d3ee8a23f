"""Transcript log components

The main class is :class:`TranscriptEngine` which owns the deduplicated,
time ordered log of final transcripts for the active recording session.

When the microphone picks up the speaker output, one utterance is recognized
on both streams. :func:`TranscriptEngine.add_final` compares each new final
against recent finals from the other stream and keeps one of them according
to the configured stream preference.
"""

import asyncio
import collections
import csv
import datetime
import io
import itertools
import json
import logging
import os
import re
import tempfile
import time
import uuid

from dualscribe.errors import PersistenceError
from dualscribe.messages import StreamId

logger = logging.getLogger(__name__)

KIND_INTERIM = 'interim'
KIND_FINAL = 'final'

EXPORT_FORMATS = {
    'json': 'json',
    'text': 'text',
    'txt': 'text',
    'csv': 'csv',
    'subtitle': 'subtitle',
    'srt': 'subtitle',
}

_PUNCTUATION_RE = re.compile(r'[^\w\s]')


def wall_clock_ms():
    return time.time() * 1000


def normalize_text(text):
    """Lower case and strip punctuation for comparison."""
    return _PUNCTUATION_RE.sub('', text.lower()).strip()


def text_similarity(text1, text2, substring_bonus=0.3):
    """Score how likely two transcripts are the same utterance.

    The score is the Jaccard overlap of the two normalized word sets. When
    one normalized text is contained in the other the score is at least
    ``substring_bonus``, which helps very short phrases.

    :ret: Similarity in [0, 1].
    :rtype: float
    """
    norm1 = normalize_text(text1)
    norm2 = normalize_text(text2)
    if not norm1 or not norm2:
        return 0.0
    if norm1 == norm2:
        return 1.0

    words1 = set(norm1.split())
    words2 = set(norm2.split())
    jaccard = len(words1 & words2) / len(words1 | words2)

    if len(norm1) > len(norm2):
        longer, shorter = norm1, norm2
    else:
        longer, shorter = norm2, norm1
    bonus = substring_bonus if shorter in longer else 0.0
    return max(jaccard, bonus)


def word_count(text):
    return len(text.split())


def iso_time(timestamp_ms):
    dt = datetime.datetime.fromtimestamp(timestamp_ms / 1000,
                                         tz=datetime.timezone.utc)
    return dt.isoformat(timespec='milliseconds')


def format_subtitle_time(offset_ms):
    offset_ms = max(0, int(round(offset_ms)))
    hours, rem = divmod(offset_ms, 3600000)
    minutes, rem = divmod(rem, 60000)
    seconds, millis = divmod(rem, 1000)
    return '%02d:%02d:%02d,%03d' % (hours, minutes, seconds, millis)


def coerce_stream_id(stream_id):
    if isinstance(stream_id, StreamId):
        return stream_id
    return StreamId(stream_id)


class Transcript(object):
    """One recognized utterance from one stream.

    :param id: Unique id, None for interim transcripts.
    :param session_id: Session the transcript belongs to.
    :param stream_id: Stream which produced the transcript.
    :type stream_id: dualscribe.messages.StreamId
    :param text: Recognized text, stripped.
    :param confidence: Recognizer confidence in [0, 1]; None for interims.
    :param timestamp: Milliseconds since the epoch.
    :param kind: ``'interim'`` or ``'final'``.
    :param tagged_text: Text prefixed with the speaker label.
    """
    def __init__(self, id, session_id, stream_id, text, confidence,
                 timestamp, kind=KIND_FINAL, tagged_text=None):
        self.id = id
        self.session_id = session_id
        self.stream_id = stream_id
        self.speaker = stream_id.speaker
        self.text = text
        self.confidence = confidence
        self.timestamp = timestamp
        self.kind = kind
        self.tagged_text = tagged_text or text

    def to_dict(self):
        return {
            'id': self.id,
            'session_id': self.session_id,
            'stream_id': self.stream_id.value,
            'speaker': self.speaker,
            'text': self.text,
            'tagged_text': self.tagged_text,
            'confidence': self.confidence,
            'timestamp': self.timestamp,
            'kind': self.kind,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(data['id'], data['session_id'],
                   StreamId(data['stream_id']), data['text'],
                   data['confidence'], data['timestamp'],
                   kind=data.get('kind', KIND_FINAL),
                   tagged_text=data.get('tagged_text'))

    def __eq__(self, other):
        if not isinstance(other, Transcript):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return 'Transcript(id=%s, speaker=%s, text=%r, confidence=%s)' % (
            self.id, self.speaker, self.text, self.confidence
        )


class Session(object):
    """A bounded recording interval.

    Holds every accepted final in order; entries retracted by duplicate
    suppression are removed.
    """
    def __init__(self, id, start_time, metadata=None):
        self.id = id
        self.start_time = start_time
        self.end_time = None
        self.metadata = dict(metadata or {})
        self._transcripts = collections.OrderedDict()

    @property
    def transcripts(self):
        return list(self._transcripts.values())

    @property
    def sealed(self):
        return self.end_time is not None

    def add(self, transcript):
        self._transcripts[transcript.id] = transcript

    def remove(self, transcript_id):
        return self._transcripts.pop(transcript_id, None)

    def to_dict(self):
        return {
            'id': self.id,
            'startTime': self.start_time,
            'endTime': self.end_time,
            'metadata': self.metadata,
            'transcripts': [t.to_dict() for t in self._transcripts.values()],
        }


def summarize(session, now_ms):
    """Compute summary statistics for a session.

    :ret: Dict with total and per speaker transcript and word counts,
        average confidence and duration in milliseconds.
    """
    transcripts = session.transcripts
    end_time = session.end_time if session.end_time is not None else now_ms
    summary = {
        'id': session.id,
        'start_time': session.start_time,
        'end_time': session.end_time,
        'duration': end_time - session.start_time,
        'total_transcripts': len(transcripts),
        'word_count': sum(word_count(t.text) for t in transcripts),
        'speakers': [],
        'average_confidence': 0.0,
    }
    if not transcripts:
        return summary

    by_speaker = collections.OrderedDict()
    for transcript in transcripts:
        by_speaker.setdefault(transcript.speaker, []).append(transcript)
    summary['speakers'] = [
        {
            'speaker': speaker,
            'transcript_count': len(entries),
            'word_count': sum(word_count(t.text) for t in entries),
        }
        for speaker, entries in by_speaker.items()
    ]
    summary['average_confidence'] = (
        sum(t.confidence for t in transcripts) / len(transcripts)
    )
    return summary


class SessionStore(object):
    """Writes one JSON document per session, named by its start time.

    :param directory: Directory session files are written to.
    :type directory: str
    """
    def __init__(self, directory):
        self.directory = directory

    def path_for(self, session):
        stamp = re.sub(r'[:.+]', '-', iso_time(session.start_time))
        return os.path.join(self.directory, 'session_%s.json' % stamp)

    async def save(self, session, document):
        """Write ``document`` for ``session`` without blocking the loop.

        :ret: Path written.
        :raises PersistenceError: If the file can not be written.
        """
        path = self.path_for(session)
        data = json.dumps(document, indent=2)
        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, self._write, path, data)
        except OSError as e:
            raise PersistenceError(path, e)
        return path

    def _write(self, path, data):
        os.makedirs(self.directory, exist_ok=True)
        with tempfile.NamedTemporaryFile('w', encoding='utf-8',
                                         dir=self.directory, suffix='.tmp',
                                         delete=False) as fp:
            fp.write(data)
        try:
            os.replace(fp.name, path)
        except OSError:
            os.unlink(fp.name)
            raise


class TranscriptEngine(object):
    """Owns the deduplicated transcript log of the active session.

    Consumers register handlers with :func:`register_event_handler`; each is
    called as ``handler(event_name, payload)`` for these events:

    - ``session-started``: ``{id, start_time}``
    - ``interim-transcript``: ``{stream_id, speaker, text, timestamp}``
    - ``final-transcript``: the transcript as a dict
    - ``transcript-updated``: ``{transcripts}`` with the most recent entries
    - ``transcript-retracted``: ``{id, speaker, text, replaced_by}`` when an
      already emitted final is removed in favor of the preferred stream
    - ``session-saved``: ``{path, session_id}``
    - ``persistence-error``: ``{session_id, error}``
    - ``session-ended``: ``{summary}``
    - ``transcripts-cleared``: ``{}``

    :param settings: Transcript settings. The engine keeps its own copy so
        runtime changes do not leak between instances.
    :type settings: dualscribe.config.TranscriptSettings
    :param store: Where sessions are persisted.
    :type store: SessionStore
    :param clock: Callable returning the current time in milliseconds.
    """
    def __init__(self, settings, store=None, clock=None):
        self.settings = settings.model_copy()
        self._store = store or SessionStore(settings.save_directory)
        self._clock = clock or wall_clock_ms
        self.session = None
        self._log = collections.OrderedDict()
        self._log_start = None
        self._interims = {}
        self._ev_handlers = []
        self._auto_save_task = None
        self._auto_save_write = None
        # One write at a time so snapshots land in the order they were taken
        self._persist_lock = asyncio.Lock()

    def register_event_handler(self, handler):
        self._ev_handlers.append(handler)

    def _emit(self, name, payload):
        for handler in self._ev_handlers:
            try:
                handler(name, payload)
            except Exception:
                logger.exception('Event handler failed for %s', name)

    async def start_session(self, metadata=None):
        """Begin a new session, sealing any session still active.

        The log and interim state are reset.

        :param metadata: Arbitrary details stored with the session.
        :type metadata: dict
        :ret: Id of the new session.
        """
        if self.session is not None:
            await self.end_session()

        now = self._clock()
        session_id = 'session_%d_%s' % (now, uuid.uuid4().hex[:12])
        self.session = Session(session_id, now, metadata)
        self._log.clear()
        self._interims.clear()
        self._log_start = now

        if self.settings.auto_save:
            self._auto_save_task = asyncio.ensure_future(self._auto_save())

        logger.info('Transcript session %s started', session_id)
        self._emit('session-started', {'id': session_id, 'start_time': now})
        return session_id

    async def end_session(self):
        """Seal and persist the active session.

        :ret: Session summary, or None if no session was active.
        :rtype: dict
        """
        if self.session is None:
            logger.debug('No active session to end')
            return None

        session = self.session
        session.end_time = self._clock()
        await self._stop_auto_save()

        summary = summarize(session, session.end_time)
        summary['saved_path'] = None
        if self.settings.auto_save:
            summary['saved_path'] = await self._persist(session)

        self.session = None
        self._interims.clear()
        logger.info('Transcript session %s ended with %d transcripts',
                    session.id, summary['total_transcripts'])
        self._emit('session-ended', {'summary': summary})
        return summary

    async def save_session(self):
        """Persist the active session now.

        :ret: Path written, or None if there is no session or the write
            failed.
        """
        if self.session is None:
            return None
        return await self._persist(self.session)

    def add_interim(self, stream_id, text, timestamp=None):
        """Replace the in-progress text of a stream.

        Interim transcripts are never stored in the log. Blank text and
        results outside of a session are ignored.
        """
        if self.session is None or self.session.sealed:
            logger.debug('Ignoring interim outside of a session')
            return None
        text = self._clean_text(text)
        if not text:
            return None
        stream_id = self._clean_stream_id(stream_id)
        if stream_id is None:
            return None
        if timestamp is None:
            timestamp = self._clock()

        interim = Transcript(None, self.session.id, stream_id, text, None,
                             timestamp, KIND_INTERIM, self._tag(stream_id,
                                                                text))
        self._interims[stream_id] = interim
        self._emit('interim-transcript', {
            'stream_id': stream_id.value,
            'speaker': interim.speaker,
            'text': text,
            'timestamp': timestamp,
        })
        return interim

    def add_final(self, stream_id, text, confidence=0.0, timestamp=None):
        """Add a committed transcript, suppressing cross-stream duplicates.

        1. A final from the non-preferred stream is dropped when the
           preferred stream produced a final within the duplicate time
           window before it.
        2. The most similar recent final from the other stream within the
           window is found.
        3. If its similarity reaches the threshold, the preferred stream's
           entry is kept. A stored non-preferred entry is retracted in favor
           of a preferred candidate. Without a preference the first entry
           is kept.

        :ret: The stored transcript, or None if it was ignored or
            suppressed.
        :rtype: Transcript
        """
        if self.session is None or self.session.sealed:
            logger.warning('Discarding final from %s outside of a session: '
                           '%r', stream_id, text)
            return None
        text = self._clean_text(text)
        if not text:
            logger.debug('Ignoring empty final from %s', stream_id)
            return None
        stream_id = self._clean_stream_id(stream_id)
        if stream_id is None:
            return None
        if timestamp is None:
            timestamp = self._clock()
        try:
            confidence = min(1.0, max(0.0, float(confidence or 0.0)))
        except (TypeError, ValueError):
            confidence = 0.0

        candidate = Transcript(self._next_id(), self.session.id, stream_id,
                               text, confidence, timestamp, KIND_FINAL,
                               self._tag(stream_id, text))

        if self.settings.filter_duplicates and \
                self._should_suppress(candidate):
            logger.info('Suppressed duplicate transcript [%s]: %s',
                        candidate.speaker, text)
            return None

        self._append(candidate)
        self._interims.pop(stream_id, None)
        logger.debug('Final transcript [%s]: %s', candidate.speaker, text)
        self._emit('final-transcript', candidate.to_dict())
        self._emit('transcript-updated', {
            'transcripts': [t.to_dict() for t in
                            self.get_recent(self.settings.recent_update_count)]
        })
        return candidate

    def _should_suppress(self, candidate):
        try:
            return self._check_duplicate(candidate)
        except Exception:
            logger.exception('Duplicate check failed, keeping transcript')
            return False

    def _check_duplicate(self, candidate):
        settings = self.settings
        preferred = settings.preferred_stream
        window = settings.duplicate_time_window

        if preferred is not None and settings.suppress_non_preferred and \
                candidate.stream_id is not preferred:
            for existing in self._recent_entries():
                if existing.stream_id is not preferred:
                    continue
                delta = candidate.timestamp - existing.timestamp
                if 0 <= delta <= window:
                    logger.debug('Suppressing %s while %s is active',
                                 candidate.speaker, existing.speaker)
                    return True

        match = None
        match_score = 0.0
        for existing in self._recent_entries():
            if existing.stream_id is candidate.stream_id:
                continue
            if abs(candidate.timestamp - existing.timestamp) > window:
                continue
            score = text_similarity(candidate.text, existing.text,
                                    settings.substring_bonus)
            if match is None or score > match_score:
                match, match_score = existing, score

        if match is None or match_score < settings.similarity_threshold:
            return False

        logger.debug('Found similar transcript (%.2f) from %s',
                     match_score, match.speaker)
        if preferred is not None:
            if match.stream_id is preferred:
                return True
            if candidate.stream_id is preferred:
                self._retract(match, candidate)
                return False
        return True

    def _recent_entries(self):
        return itertools.islice(reversed(self._log.values()),
                                self.settings.comparison_window)

    def _retract(self, transcript, replaced_by):
        self._log.pop(transcript.id, None)
        if self.session is not None:
            self.session.remove(transcript.id)
        logger.info('Retracted transcript %s [%s] in favor of %s',
                    transcript.id, transcript.speaker, replaced_by.speaker)
        self._emit('transcript-retracted', {
            'id': transcript.id,
            'speaker': transcript.speaker,
            'text': transcript.text,
            'replaced_by': replaced_by.id,
        })

    def _append(self, transcript):
        self._log[transcript.id] = transcript
        self.session.add(transcript)
        while len(self._log) > self.settings.max_buffer_size:
            self._log.popitem(last=False)

    def get_recent(self, n=10):
        """The ``n`` most recent final transcripts, oldest first."""
        if n <= 0:
            return []
        return list(itertools.islice(reversed(self._log.values()), n))[::-1]

    def get_interims(self):
        return list(self._interims.values())

    def search(self, query, speaker=None, date_range=None,
               case_sensitive=False, limit=50):
        """Find transcripts containing ``query``.

        :param speaker: Speaker label or :class:`StreamId` to filter on.
        :param date_range: ``(start, end)`` timestamps in milliseconds,
            inclusive.
        :param limit: Maximum results; the most recent matches are kept.
        :ret: Matching transcripts, oldest first.
        """
        if isinstance(speaker, StreamId):
            speaker = speaker.speaker
        needle = query if case_sensitive else query.lower()

        results = []
        for transcript in self._log.values():
            if speaker and transcript.speaker != speaker:
                continue
            if date_range:
                start, end = date_range
                if not start <= transcript.timestamp <= end:
                    continue
            haystack = transcript.text if case_sensitive else \
                transcript.text.lower()
            if needle in haystack:
                results.append(transcript)
        if limit is not None:
            results = results[-limit:] if limit > 0 else []
        return results

    def export(self, fmt='json', session_only=False):
        """Render transcripts.

        :param fmt: One of ``json``, ``text`` (``txt``), ``csv`` or
            ``subtitle`` (``srt``).
        :param session_only: Export every transcript of the active session
            instead of the bounded log.
        :ret: Rendered document.
        :rtype: str
        :raises ValueError: For an unsupported format.
        """
        kind = EXPORT_FORMATS.get(fmt.lower())
        if kind is None:
            raise ValueError('Unsupported export format: %s' % fmt)
        if session_only and self.session is not None:
            transcripts = self.session.transcripts
        else:
            transcripts = list(self._log.values())

        if kind == 'json':
            return json.dumps([t.to_dict() for t in transcripts], indent=2)
        elif kind == 'text':
            return '\n'.join(
                '[%s] [%s] %s' % (datetime.datetime.fromtimestamp(
                    t.timestamp / 1000).strftime('%H:%M:%S'), t.speaker,
                    t.text)
                for t in transcripts
            )
        elif kind == 'csv':
            return self._export_csv(transcripts)
        return self._export_subtitle(transcripts)

    def _export_csv(self, transcripts):
        out = io.StringIO()
        writer = csv.writer(out, lineterminator='\n')
        writer.writerow(['Timestamp', 'Speaker', 'Text', 'Confidence'])
        for t in transcripts:
            writer.writerow([iso_time(t.timestamp), t.speaker, t.text,
                             t.confidence])
        return out.getvalue()

    def _export_subtitle(self, transcripts):
        if not transcripts:
            return ''
        base = self._log_start
        if base is None:
            base = transcripts[0].timestamp

        blocks = []
        for i, t in enumerate(transcripts):
            if i + 1 < len(transcripts):
                end = transcripts[i + 1].timestamp
            else:
                end = t.timestamp + self.settings.subtitle_default_duration
            blocks.append('%d\n%s --> %s\n%s\n' % (
                i + 1,
                format_subtitle_time(t.timestamp - base),
                format_subtitle_time(end - base),
                t.tagged_text,
            ))
        return '\n'.join(blocks)

    def set_duplicate_filtering(self, enabled):
        self.settings.filter_duplicates = bool(enabled)
        logger.info('Duplicate filtering %s',
                    'enabled' if enabled else 'disabled')

    def set_system_audio_only(self, enabled):
        """Prefer system audio and drop the microphone while it talks."""
        self.settings.suppress_non_preferred = bool(enabled)
        self.settings.preferred_stream = StreamId.SYSTEM if enabled else None
        logger.info('System audio only mode %s',
                    'enabled' if enabled else 'disabled')

    def set_similarity_threshold(self, threshold):
        self.settings.similarity_threshold = max(0.0, min(1.0, threshold))

    def clear(self):
        self._log.clear()
        self._interims.clear()
        self._emit('transcripts-cleared', {})

    def status(self):
        return {
            'active_session': self.session is not None,
            'session_id': self.session.id if self.session else None,
            'session_start_time':
                self.session.start_time if self.session else None,
            'transcript_count': len(self._log),
            'interim_count': len(self._interims),
            'auto_save_enabled': self._auto_save_task is not None,
        }

    async def _persist(self, session):
        async with self._persist_lock:
            document = session.to_dict()
            document['summary'] = summarize(session, self._clock())
            document['exportedAt'] = self._clock()
            try:
                path = await self._store.save(session, document)
            except PersistenceError as e:
                logger.error('%s', e)
                self._emit('persistence-error', {'session_id': session.id,
                                                 'error': str(e)})
                return None
        logger.debug('Session %s saved to %s', session.id, path)
        self._emit('session-saved', {'path': path, 'session_id': session.id})
        return path

    async def _auto_save(self):
        while True:
            await asyncio.sleep(self.settings.auto_save_interval)
            if self.session is not None and self._log:
                self._auto_save_write = asyncio.ensure_future(
                    self._persist(self.session))
                # Cancelling the loop must not abandon a write in progress
                await asyncio.shield(self._auto_save_write)

    async def _stop_auto_save(self):
        if self._auto_save_task is None:
            return
        task, self._auto_save_task = self._auto_save_task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        write, self._auto_save_write = self._auto_save_write, None
        if write is not None:
            await write

    def _next_id(self):
        return 'transcript_%d_%s' % (self._clock(), uuid.uuid4().hex[:8])

    def _tag(self, stream_id, text):
        if self.settings.enable_speaker_tagging:
            return '[%s] %s' % (stream_id.speaker, text)
        return text

    @staticmethod
    def _clean_text(text):
        if not isinstance(text, str):
            return ''
        return text.strip()

    @staticmethod
    def _clean_stream_id(stream_id):
        try:
            return coerce_stream_id(stream_id)
        except ValueError:
            logger.warning('Ignoring transcript from unknown stream %r',
                           stream_id)
            return None
