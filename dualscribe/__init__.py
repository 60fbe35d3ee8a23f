"""Toolkit for transcribing a conversation from two audio streams.

There are four major components of this toolkit:
:class:`audio.AudioSourceCapture`,
:class:`recognition.RecognitionSession`,
:class:`orchestrator.SessionOrchestrator` and
:class:`transcript.TranscriptEngine`.

An :class:`orchestrator.SessionOrchestrator` forwards audio from one
:class:`audio.AudioSourceCapture` per stream (the microphone and the system
audio output) to a :class:`recognition.RecognitionSession` per stream, and
hands every recognition result to a :class:`transcript.TranscriptEngine`
which stores final transcripts, dropping duplicates of an utterance heard by
both streams.
"""
